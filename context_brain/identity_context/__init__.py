"""Identity Context package.

Contract:
- Canonical persistence in SQLite (CONTEXT_BRAIN_DB_PATH).
- Identifiers are minted only through context_brain.minter.
- Lifecycle writes are atomic: entity, DNA, archive and event commit together.
- Rows are never deleted; every lifecycle operation is auditable.
"""
