"""
Transcription module for LiveScribe.

Provides serialized faster-whisper inference, model lifecycle management and
streaming reconciliation of partial results.
"""

from .engine import InferenceEngine, TranscriptionResult, thread_count
from .models import MODEL_CATALOG, ModelDescriptor, ModelManager, ModelState, ModelStatus, get_model
from .service import LocalTranscriptionService, TranscriptionService
from .streaming import StreamingReconciler, StreamingState, StreamingTranscriber, StreamingUpdate

__all__ = [
    'MODEL_CATALOG',
    'InferenceEngine',
    'LocalTranscriptionService',
    'ModelDescriptor',
    'ModelManager',
    'ModelState',
    'ModelStatus',
    'StreamingReconciler',
    'StreamingState',
    'StreamingTranscriber',
    'StreamingUpdate',
    'TranscriptionResult',
    'TranscriptionService',
    'get_model',
    'thread_count',
]
