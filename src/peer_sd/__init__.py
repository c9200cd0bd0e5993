"""Peer service discovery — find network peers and export them as scrape targets."""

__version__ = "0.1.0"
