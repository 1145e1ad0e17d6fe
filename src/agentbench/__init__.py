"""agentbench: benchmarking harness for tool-using AI agents."""

__version__ = "0.3.0"
