"""
shuttlr - direct peer-to-peer file transfer over WebRTC data channels.
"""

__version__ = '1.0.0'
