from __future__ import annotations

import argparse
import logging
from pathlib import Path

from multifragreg.cli.register import check_config_files, render_views, run_registration
from multifragreg.meta import load_registration_config


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="multifragreg")
    sub = parser.add_subparsers(dest="cmd", required=True)

    reg = sub.add_parser("register", help="Register the fragments of a config against its radiographs.")
    reg.add_argument("config", type=Path)
    reg.add_argument("--verbose", action="store_true", help="Log every solver iteration.")

    val = sub.add_parser("validate-config", help="Validate a registration config and the files it references.")
    val.add_argument("config", type=Path)

    ren = sub.add_parser("render", help="Render every view at the configured poses (overlay PNGs).")
    ren.add_argument("config", type=Path)
    ren.add_argument("--out", type=Path, required=True)

    args = parser.parse_args(argv)

    if args.cmd == "register":
        if args.verbose:
            logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
        for p in run_registration(args.config, verbose=args.verbose):
            print(f"Wrote {p}")
        return 0

    if args.cmd == "validate-config":
        cfg = load_registration_config(args.config)
        paths = check_config_files(cfg)
        print(f"OK: {cfg.setup.fragments} fragments x {cfg.setup.views} views, {len(paths)} files")
        return 0

    if args.cmd == "render":
        for p in render_views(args.config, args.out):
            print(f"Wrote {p}")
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")
