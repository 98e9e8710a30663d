from __future__ import annotations

import argparse
import json
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from loguru import logger

# Ensure local src/ is importable when running from project root
ROOT = Path(__file__).parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from tagcache import __version__  # noqa: E402
from tagcache.config import TagCacheSettings, cli_overrides_from_args  # noqa: E402
from tagcache.library import MetadataLibrary  # noqa: E402
from tagcache.logging import bind_run, configure  # noqa: E402
from tagcache.watcher import LibraryWatcher  # noqa: E402


EXIT_OK = 0
EXIT_USAGE = 1
EXIT_NOTHING_FOUND = 2


def cmd_scan(cfg: TagCacheSettings) -> int:
    if not cfg.library_roots:
        logger.error("No library roots: pass them on the command line or set library_roots in the config")
        return EXIT_USAGE
    with MetadataLibrary(cfg) as lib:
        summary = lib.refresh()
        lib.save()
    logger.info(
        "scanned={scanned} reused={reused} extracted={extracted} failed={failed}".format(**summary)
    )
    return EXIT_OK if summary["scanned"] else EXIT_NOTHING_FOUND


def cmd_show(cfg: TagCacheSettings, path: str) -> int:
    lib = MetadataLibrary(cfg)
    try:
        lib.start()
        record = lib.get_metadata(path)
        if record is None:
            logger.error(f"Not in cache: {path}")
            return EXIT_NOTHING_FOUND
        print(json.dumps(record.to_dict(), ensure_ascii=False, indent=2))
        return EXIT_OK
    finally:
        # Read-only: do not rewrite the snapshot on the way out
        lib.settings.autosave = False
        lib.close()


def cmd_export(cfg: TagCacheSettings) -> int:
    lib = MetadataLibrary(cfg)
    try:
        lib.start()
        print(json.dumps(lib.export_snapshot(), ensure_ascii=False, indent=1, sort_keys=True))
        return EXIT_OK
    finally:
        lib.settings.autosave = False
        lib.close()


def cmd_watch(cfg: TagCacheSettings, stop_event: Optional[threading.Event] = None) -> int:
    if not cfg.library_roots:
        logger.error("No library roots to watch")
        return EXIT_USAGE
    stop = stop_event or threading.Event()
    with MetadataLibrary(cfg) as lib:
        lib.refresh()
        with LibraryWatcher(lib, cfg.library_roots):
            try:
                while not stop.wait(1.0):
                    pass
            except KeyboardInterrupt:
                logger.info("Interrupted; saving snapshot")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="tagcache")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ~/.config/tagcache/config.toml)",
    )
    p.add_argument(
        "--write-config",
        action="store_true",
        help="Write current effective settings to the config file and exit",
    )
    p.add_argument("--log-level", default=None, help="Console log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-json", dest="log_json", default=None, help="Path to write JSON lines log")
    p.add_argument("--snapshot", dest="snapshot_path", default=None, help="Path to the metadata snapshot JSON")
    sub = p.add_subparsers(dest="cmd")

    p_scan = sub.add_parser("scan", help="Refresh metadata for every audio file under the library roots")
    p_scan.add_argument("library_roots", nargs="*", help="Library roots (default from settings)")
    p_scan.add_argument("--workers", type=int, default=None, help="Parallel workers (default: CPU cores)")
    p_scan.add_argument(
        "--force",
        action="store_const",
        const=True,
        default=None,
        help="Decode every file again, ignoring complete cached records",
    )

    p_show = sub.add_parser("show", help="Print the cached record for one file")
    p_show.add_argument("path")

    sub.add_parser("export", help="Print the persisted snapshot as JSON")

    p_watch = sub.add_parser("watch", help="Refresh, then follow filesystem changes until interrupted")
    p_watch.add_argument("library_roots", nargs="*", help="Library roots (default from settings)")
    p_watch.add_argument("--workers", type=int, default=None, help="Parallel workers (default: CPU cores)")
    p_watch.add_argument("--settle-delay", dest="settle_delay", type=float, default=None)
    p_watch.add_argument("--debounce-delay", dest="debounce_delay", type=float, default=None)

    args = p.parse_args(argv)
    overrides = cli_overrides_from_args(args)
    cfg = TagCacheSettings.load(
        config_path=Path(args.config_path).expanduser() if args.config_path else None,
        overrides=overrides,
    )

    if args.write_config:
        written = cfg.write(Path(args.config_path).expanduser() if args.config_path else None)
        print(f"Config written to: {written}")
        return EXIT_OK

    if not args.cmd:
        p.print_help()
        return EXIT_USAGE

    configure(cfg.log_level, cfg.log_json)
    bind_run()
    if args.cmd == "scan":
        return cmd_scan(cfg)
    if args.cmd == "show":
        return cmd_show(cfg, args.path)
    if args.cmd == "export":
        return cmd_export(cfg)
    if args.cmd == "watch":
        return cmd_watch(cfg)
    p.error("unknown command")
    return EXIT_USAGE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
