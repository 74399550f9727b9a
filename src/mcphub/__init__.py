"""mcphub - process-based plugin supervisor.

Runs each plugin as its own worker process, negotiates its tools, resources
and prompts over stdio, and exposes them as one namespaced catalog.
"""

__version__ = "0.1.0"
