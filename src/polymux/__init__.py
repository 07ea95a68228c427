"""Polymux - one real-time protocol in front of many AI backends"""

__version__ = "0.1.0"
