"""ClusterHub - clusters, projects and tasks with team chat."""

__version__ = "0.1.0"
