"""
Command Line Interface for eosmc
================================

Usage:
    eosmc mcmc --config analysis.yaml --output-file run.hdf5
    eosmc pmc --config analysis.yaml --chains-file run.hdf5
"""

from eosmc.cli.args_parser import create_parser, validate_args
from eosmc.cli.commands import dispatch_command
from eosmc.cli.main import main

__all__ = [
    "main",
    "create_parser",
    "dispatch_command",
    "validate_args",
]
