"""
Returns intake: scan, photograph, upload and reconcile warehouse returns.

Shared utilities (config, logging, paths) live at the top level; the domain
rules, capture handling, storage adapters and orchestration each have their
own subpackage.
"""

__all__ = [
    "config",
    "logging",
    "paths",
]
