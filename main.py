#!/usr/bin/env python3
"""
Development launcher for autosplit.

Runs the monitoring daemon in the foreground with DEV logging unless a
subcommand is given (``convert``, ``split``, ``token``). Ctrl-C exits
cleanly after every capture has been finalised.
"""

import os
import sys

from autosplit import daemon


def main():
    os.environ.setdefault("DEV", "1")
    args = sys.argv[1:] or ["run"]
    print(f"[dev] autosplit {' '.join(args)} (Ctrl-C to exit)", flush=True)
    return daemon.main(args)


if __name__ == "__main__":
    raise SystemExit(main())
