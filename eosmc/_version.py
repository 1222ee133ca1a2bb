"""Version information for eosmc."""

version = "0.3.0"
__version__ = version
