"""acmetags  –  print acme windows, dirty ones first, as `<true|false>\\t<name>`."""

import argparse
import sys
from typing import List, Optional

import acme_windows
from acme_windows import AcmeError, Config


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="acmetags",
        description="Print the acme windows sorted by dirtiness and file recency.",
    )
    p.add_argument("-o", dest="output", default=None, metavar="FILE",
                   help="output file. will only truncate if no error and output is non empty.")
    p.add_argument("-ts", "--ts", dest="timestamp", action="store_true",
                   help="add a timestamp suffix to the output file name")
    p.add_argument("-all", "--all", dest="all_windows", action="store_true",
                   help="list all windows (the default; kept for compatibility)")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="print per-window diagnostics to stderr")
    p.add_argument("--config", default=acme_windows.CONFIG_PATH,
                   help="JSON config with 'ninep' and 'service' keys")
    return p


def run(cfg: Config) -> int:
    client  = acme_windows.AcmeClient(ninep=cfg.ninep, service=cfg.service)
    records = acme_windows.rank(acme_windows.collect_windows(client, verbose=cfg.verbose))
    text    = acme_windows.render_report(records, label_style="bool")
    written = acme_windows.write_report(text, output=cfg.output, timestamp=cfg.timestamp)
    if written:
        acme_windows.diag(cfg.verbose, f"Wrote {len(records)} windows -> {written}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    p    = build_parser()
    args = p.parse_args(argv)
    if args.timestamp and not args.output:
        p.error("-ts requires -o")

    file_cfg = acme_windows.load_config(args.config)
    cfg = Config(
        output=args.output,
        timestamp=args.timestamp,
        all_windows=args.all_windows,
        verbose=args.verbose,
        ninep=str(file_cfg.get("ninep") or acme_windows.DEFAULT_NINEP),
        service=str(file_cfg.get("service") or acme_windows.DEFAULT_SERVICE),
    )
    try:
        return run(cfg)
    except (AcmeError, OSError) as exc:
        print(f"{p.prog}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
