"""
Build system components for crosspack.

This module provides the per-target build stages:
- Compilation and test execution (cargo)
- Bundle assembly (binary + dependency runtime files)
- Archive packing
"""

from .artifact_packer import ArtifactPacker, PackageArchive, PackagingIO
from .bundle_assembler import Bundle, BundleAssembler, PathCollision
from .orchestrator import (
    BuildOrchestrator,
    CompiledOutput,
    CompileError,
    TestFailure,
    TestStatus,
)

__all__ = [
    "BuildOrchestrator",
    "CompiledOutput",
    "CompileError",
    "TestFailure",
    "TestStatus",
    "BundleAssembler",
    "Bundle",
    "PathCollision",
    "ArtifactPacker",
    "PackageArchive",
    "PackagingIO",
]
