"""chatgate - one conversational agent reachable from many chat platforms."""

__version__ = "0.4.0"
