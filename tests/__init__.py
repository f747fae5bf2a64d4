"""
etcd backup agent test suite.

This package contains:
- unit/: Unit tests (no external services; cloud SDK clients are faked)
"""
