"""Unit tests for eosmc components."""
