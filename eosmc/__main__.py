"""
Main Entry Point for eosmc
==========================

Primary entry point when eosmc is called as a module:
    python -m eosmc [args...]
"""

import sys

from eosmc.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
