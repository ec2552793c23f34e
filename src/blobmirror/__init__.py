"""blobmirror - Incremental, resumable mirroring of remote object stores."""

__version__ = "0.1.0"
