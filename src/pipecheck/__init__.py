"""pipecheck: validate and simulate declarative Jenkins pipelines."""

__version__ = "0.1.0"
