"""Frame metadata export.

Builds the key/value manifest handed to an external persistence
collaborator.
"""

from cameraunit.data.manifest import (
    RESERVED_CARDS,
    STANDARD_KEYS,
    FrameManifest,
    ManifestSink,
    MetadataKey,
    build_manifest,
    export_frame,
)

__all__ = [
    "RESERVED_CARDS",
    "STANDARD_KEYS",
    "FrameManifest",
    "ManifestSink",
    "MetadataKey",
    "build_manifest",
    "export_frame",
]
