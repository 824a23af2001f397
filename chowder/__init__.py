"""
Chowder: an HTTP gateway that streams uploads to a clamd daemon.
"""

__version__ = "0.3.0"
