"""TaskWing — continuous codebase analysis core.

Watches a working tree, routes changes to analyzer agents, verifies the
findings they produce against the source on disk and exposes tasks and
findings to external clients through a stdio tool server.
"""

__version__ = "0.1.0"
