"""tagcache

Metadata cache and synchronization engine for an audio library: extracts
title/artist/album/cover/lyrics with mutagen, keeps them in sync with
filesystem changes and persists them as a JSON snapshot.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
