"""
Pytest configuration for Chowder tests.

This file helps pytest find and import the application modules.
"""

import os
import socket
import sys

import pytest

# Add the repository root to the Python path so ``chowder`` imports without install
root_path = os.path.join(os.path.dirname(__file__), '..')
if root_path not in sys.path:
    sys.path.insert(0, root_path)


@pytest.fixture
def closed_port_address():
    """An address with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"127.0.0.1:{port}"
