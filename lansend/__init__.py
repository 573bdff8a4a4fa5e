"""Peer-to-peer LAN file and text transfer."""

__version__ = "0.1.0"
