"""acmedirty  –  print acme windows as `<dirty|clean>\\t<name>`, optionally files only."""

import argparse
import sys
from typing import List, Optional, TextIO

import acme_windows
from acme_windows import AcmeError, Config


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="acmedirty",
        description="Print the acme windows labelled dirty/clean, dirty ones first.",
    )
    p.add_argument("-f", dest="file_only", action="store_true",
                   help="only list windows backed by a regular file on disk")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="print per-window diagnostics to stderr")
    p.add_argument("--config", default=acme_windows.CONFIG_PATH,
                   help="JSON config with 'ninep' and 'service' keys")
    return p


def run(cfg: Config, stream: Optional[TextIO] = None) -> int:
    client  = acme_windows.AcmeClient(ninep=cfg.ninep, service=cfg.service)
    records = acme_windows.collect_windows(client, file_only=cfg.file_only,
                                           verbose=cfg.verbose)
    text = acme_windows.render_report(acme_windows.rank(records),
                                      label_style="word", leading_blank=True)
    acme_windows.write_report(text, stream=stream)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    p    = build_parser()
    args = p.parse_args(argv)

    file_cfg = acme_windows.load_config(args.config)
    cfg = Config(
        file_only=args.file_only,
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
