"""speechgate: request coordination and caching for speech-transcription APIs."""

from __future__ import annotations

__version__ = "0.1.0"
