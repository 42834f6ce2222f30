"""
Epic Swarm - decision core for autonomous epic processing.

Discovers epics and their stories, orders the work by dependency, decides
when a story is actually done, drives each pull request through review and
merge, and recovers from the transient failures that show up along the way.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
