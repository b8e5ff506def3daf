"""
Mind Ease - a mental wellness companion service.

This package provides the conversational session manager (streamed replies from
a generative-language API), per-user persistence for chat and mood history,
the sign-in session store and voice command interpretation, exposed over HTTP
and Server-Sent Events.
"""

__version__ = "0.1.0"
