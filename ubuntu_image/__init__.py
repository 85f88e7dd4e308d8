"""ubuntu-image: bootable disk image builder (state-driven, resumable).

Core design goals:
- Resumable state machine with a checkpoint after every step
- Re-runnable steps (each recreates its own output)
- Two step catalogs (snap, classic) sharing one engine
- Layout validated before any disk image exists
- Centralized logging
"""

__version__ = "3.0.0"

__all__ = ["__version__"]
