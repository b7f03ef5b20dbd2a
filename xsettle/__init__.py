"""
xsettle: cross-chain deal settlement engine.

Deal identity and payload codec, a confirmation gate, a chain event watcher,
the settlement orchestrator and the SSE progress stream that carries it.
"""

__version__ = "0.3.0"
