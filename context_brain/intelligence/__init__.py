"""Context intelligence: coherence, autonomy, lifecycle, collaboration and session commit.

Everything here reads and writes through identity_context.db; nothing holds a
connection beyond a single call.
"""
