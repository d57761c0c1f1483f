"""
Channel adapters, routing and delivery.

Submodules are imported directly (``chatgate.channels.telegram`` etc.) so
that loading one adapter does not pull in every platform SDK.
"""
