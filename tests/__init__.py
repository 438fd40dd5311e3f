"""
Test Suite for the staking analytics engine

Unit tests live beside each package (analysis/tests, caching/tests,
storage/tests); this package holds command line tests.
"""
