"""Integration tests for eosmc sampling workflows."""
