"""Context brain: synthetic identity contexts and their lifecycle."""
