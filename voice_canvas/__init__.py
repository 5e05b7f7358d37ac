"""
Voice-to-image pipeline package.

Modules:
- usage: per-user request ledger with a rolling reset window.
- retry: fixed-delay retry helper for async operations.
- transcription: speech-to-text services.
- imagegen: image generation from a text prompt.
- pipeline: upload orchestration (quota -> transcript -> image).
- app: command line entry point.
"""
