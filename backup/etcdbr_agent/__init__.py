"""
etcd backup agent - snapshot store subsystem.

This package persists point-in-time etcd snapshots to remote object
storage and reads them back for restore. It is built on:
- A naming scheme that encodes kind, revision range and creation time
  in every object path, readable across naming generations
- A capability interface over object-storage backends (Azure Blob
  Storage, S3-compatible storage, in-memory)
- A parallel, cancellable chunked upload engine with an atomic commit
- Multi-source credential resolution with rotation detection

Architecture:
    ┌──────────────┐      ┌───────────────────┐      ┌──────────────────┐
    │  scheduler / │─────▶│  ChunkedSnapStore │─────▶│ ChunkedUploader  │
    │  restorer    │      │ save/fetch/list/  │      │ P worker tasks   │
    └──────────────┘      │ delete            │      └────────┬─────────┘
                          └─────────┬─────────┘               │
                                    │                         ▼
                                    │              ┌─────────────────────┐
                                    └─────────────▶│  ContainerClient /  │
                                                   │  ObjectClient       │
                                                   └──────────┬──────────┘
                                         ┌────────────────────┼──────────────┐
                                         ▼                    ▼              ▼
                                    ┌─────────┐          ┌─────────┐    ┌─────────┐
                                    │   ABS   │          │   S3    │    │ memory  │
                                    └─────────┘          └─────────┘    └─────────┘

Invariants:
    - A snapshot object is visible only after a successful commit
    - Already-written snapshots stay listable across naming generations
    - Credentials are re-read on every resolution, never cached

How to change safely:
    - Naming changes must add a new naming-version tag, never edit one
    - New backends must implement the ContainerClient protocol

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
