"""Rollwright - release orchestration for containerised units.

Moves a commit from "pushed" to "running and verified": build and scan
images, publish them by digest, append a manifest revision to a git-backed
store, reconcile the cluster against it, verify health and roll back
automatically when a release degrades.
"""

__version__ = "0.1.0"
