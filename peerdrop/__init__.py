"""
peerdrop - direct peer-to-peer file transfer paired by a 6-digit code.

A small relay pairs two peers and forwards their signaling messages; the
file itself travels over a direct peer channel as indexed, optionally
compressed chunks.
"""

__version__ = "0.1.0"
