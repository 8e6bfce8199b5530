"""Test suite for the stepgraph graph layer.

This package contains tests for graph definition, organized into:

1. Builder and validation (test_base.py)
2. Channels and reducers (test_state.py)
3. Command and Send (test_command.py)
4. Run configuration (test_config.py)
5. Node specifications (nodes/)
"""
