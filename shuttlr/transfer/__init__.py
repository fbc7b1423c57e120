"""
Transfer Module - Chunked File Transfer over a Data Channel

Handles framing, sending with backpressure, and reassembly.
"""

from .chunker import BytesFileSource, FileChunker, FileSource, PathFileSource
from .receiver import ChunkReceiver
from .registry import Transfer, TransferDirection, TransferRegistry, TransferStatus
from .sender import (
    CancelToken, ChunkSender, RetryingSender, RetryPolicy, SendHandle, SendResult
)

__all__ = [
    'BytesFileSource',
    'CancelToken',
    'ChunkReceiver',
    'ChunkSender',
    'FileChunker',
    'FileSource',
    'PathFileSource',
    'RetryingSender',
    'RetryPolicy',
    'SendHandle',
    'SendResult',
    'Transfer',
    'TransferDirection',
    'TransferRegistry',
    'TransferStatus',
]
