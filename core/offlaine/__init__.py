"""OfflAIne Core - offline model acquisition and device capability engine."""

__version__ = "0.1.0"
