"""
tx_helper Test Suite

Test Structure:
- unit/: Unit tests for individual components, no network access
- integration/: Tests against a live RPC endpoint, skipped unless TX_HELPER_RPC_URL is set
"""
