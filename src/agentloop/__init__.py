"""agentloop: keeps an autonomous agent session working until its task is done."""

__version__ = "0.3.0"
