"""Command-line interface for Rollwright.

Operator commands are thin clients of the operator API; ``serve`` runs the
API server with the release coordinator.
"""
