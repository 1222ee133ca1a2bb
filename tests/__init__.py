"""
eosmc Test Suite
================

Test Categories:
- Unit Tests: Parameters, priors, likelihoods, samplers, storage, CLI
- Integration Tests: Sampling scenarios and command-line workflows
"""
