"""
MeshDrop - peer-assisted encrypted file transfer

One host, any number of receivers: chunks flow over a relay and over
direct WebRTC links between receivers, encrypted with a split-key
one-time pad.
"""

__version__ = "1.0.0"
