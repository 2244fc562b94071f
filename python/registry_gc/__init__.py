"""
Garbage collection for container images in AWS ECR.

Decides which images to delete from a repository given a retention policy,
deletes them in batches, and exports per-repository image counts as metrics.
"""

__version__ = "0.3.0"
