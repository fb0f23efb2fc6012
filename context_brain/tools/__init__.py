"""Tool Advisor: static capability registry and per-profile ranking."""
