"""TraceLens: an agent that answers questions about recorded computer activity."""

__version__ = "0.1.0"
