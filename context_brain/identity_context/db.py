from __future__ import annotations

"""
identity_context/db.py

Context Store: SQLite persistence for context entities, DNA, pairs,
collaborations and the append-only lifecycle event log.

Contract:
- Schema is created non-destructively (CREATE TABLE IF NOT EXISTS).
- JSON-encoded columns are encoded/decoded here and nowhere else.
  Callers only see identity_context.types dataclasses.
- Multi-row writes go through transaction(); a failure rolls back everything.
- Leaving active/dormant requires a version match (transition_status).
- DNA updates are version-checked too (update_dna), so a writer holding a
  stale read loses instead of overwriting.
- Rows are never deleted. Archived/dissolved entities stay for audit.
- No background jobs. Expired suspensions are only listed, never swept.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ..intelligence.errors import LifecycleConflict, StoreFailure
from .types import (
    LIVE_STATUSES,
    Collaboration,
    CollaborationKind,
    Competency,
    ContextDNA,
    ContextEntity,
    ContextPair,
    ContextProfile,
    ContextStatus,
    Issuer,
    LifecycleEvent,
    LifecycleEventType,
    clamp_trust_level,
    to_plain,
)

logger = logging.getLogger(__name__)


# ----------------------------
# Time helpers
# ----------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ----------------------------
# Connection + schema
# ----------------------------

def connect(db_path: str) -> sqlite3.Connection:
    # Autocommit mode: multi-statement writes open their own transaction().
    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.row_factory = sqlite3.Row
    ensure_schema(conn)
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create context store tables if missing (non-destructive)."""
    cur = conn.cursor()

    # Context entities (the unit of identity)
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS context_entities (
            id TEXT PRIMARY KEY,
            chitty_id TEXT NOT NULL UNIQUE,
            context_hash TEXT NOT NULL,
            project_path TEXT NOT NULL,
            workspace TEXT NULL,
            support_type TEXT NOT NULL,
            organization TEXT NULL,
            signature TEXT NOT NULL,
            issuer TEXT NOT NULL CHECK (issuer IN ('normal','supernova','fission','derivative','suspension')),
            trust_score REAL NOT NULL DEFAULT 50.0,
            trust_level INTEGER NOT NULL DEFAULT 3 CHECK (trust_level BETWEEN 0 AND 5),
            status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','dormant','archived','dissolved')),
            version INTEGER NOT NULL DEFAULT 1,
            total_sessions INTEGER NOT NULL DEFAULT 0,
            last_activity TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_entities_project ON context_entities (project_path)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_entities_support ON context_entities (support_type)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_entities_status ON context_entities (status)")
    # Founding hash is unique among live rows only; archived rows keep theirs for audit.
    cur.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_live_hash
        ON context_entities (context_hash) WHERE status IN ('active','dormant')
        """
    )

    # Accumulated experience, one row per entity
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS context_dna (
            id TEXT PRIMARY KEY,
            context_id TEXT NOT NULL UNIQUE,
            context_chitty_id TEXT NOT NULL UNIQUE,
            competencies_json TEXT NOT NULL DEFAULT '[]',
            domains_json TEXT NOT NULL DEFAULT '[]',
            total_interactions INTEGER NOT NULL DEFAULT 0,
            total_decisions INTEGER NOT NULL DEFAULT 0,
            success_rate REAL NOT NULL DEFAULT 0.0,
            anomaly_count INTEGER NOT NULL DEFAULT 0,
            last_anomaly_at TEXT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (context_id) REFERENCES context_entities (id)
        )
        """
    )

    # Pairwise relationships between independently-owned contexts
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS context_pairs (
            id TEXT PRIMARY KEY,
            chitty_id_1 TEXT NOT NULL,
            chitty_id_2 TEXT NOT NULL,
            relationship_type TEXT NOT NULL,
            complementarity TEXT NOT NULL CHECK (complementarity IN ('complementary','overlapping','synergistic')),
            overlap_json TEXT NOT NULL DEFAULT '[]',
            unique_1_json TEXT NOT NULL DEFAULT '[]',
            unique_2_json TEXT NOT NULL DEFAULT '[]',
            settings_json TEXT NOT NULL DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','paused','dissolved')),
            created_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_pairs_ctx1 ON context_pairs (chitty_id_1)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_pairs_ctx2 ON context_pairs (chitty_id_2)")

    # Delegations and ad hoc teams
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS context_collaborations (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL CHECK (kind IN ('delegation','solution')),
            parent_chitty_id TEXT NULL,
            child_chitty_id TEXT NULL,
            project_id TEXT NULL,
            scope_json TEXT NOT NULL DEFAULT '{}',
            permissions_json TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','paused','completed','revoked')),
            started_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_collab_parent ON context_collaborations (parent_chitty_id)")
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS collaboration_members (
            collaboration_id TEXT NOT NULL,
            chitty_id TEXT NOT NULL,
            role TEXT NOT NULL,
            PRIMARY KEY (collaboration_id, chitty_id),
            FOREIGN KEY (collaboration_id) REFERENCES context_collaborations (id)
        )
        """
    )

    # Lifecycle audit log (append-only)
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS context_lifecycle_events (
            id TEXT PRIMARY KEY,
            event_type TEXT NOT NULL,
            trigger_reason TEXT NULL,
            analysis_json TEXT NOT NULL DEFAULT '{}',
            user_confirmed INTEGER NOT NULL DEFAULT 0 CHECK (user_confirmed IN (0,1)),
            created_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_lifecycle_type ON context_lifecycle_events (event_type)")
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS lifecycle_event_contexts (
            event_id TEXT NOT NULL,
            chitty_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('source','result')),
            position INTEGER NOT NULL,
            PRIMARY KEY (event_id, role, position),
            FOREIGN KEY (event_id) REFERENCES context_lifecycle_events (id)
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_event_ctx_chitty ON lifecycle_event_contexts (chitty_id, role)")

    # Suspension membership (replaces pattern matching over serialized id lists)
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS suspension_members (
            suspension_chitty_id TEXT NOT NULL,
            member_chitty_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            PRIMARY KEY (suspension_chitty_id, member_chitty_id)
        )
        """
    )

    # Locally minted identifiers awaiting reconciliation with the authority
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS identity_reconciliation (
            chitty_id TEXT PRIMARY KEY,
            entity_type TEXT NOT NULL,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            reconciled_at TEXT NULL
        )
        """
    )


# ----------------------------
# Transactions
# ----------------------------

@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    One atomic unit of work. Commits on success, rolls back on any exception.
    sqlite3 errors surface as StoreFailure.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as exc:
        logger.error("Could not open transaction: %s", exc)
        raise StoreFailure(f"Could not open transaction: {exc}") from exc

    try:
        yield conn
    except sqlite3.Error as exc:
        conn.rollback()
        logger.error("Store write failed, rolled back: %s", exc)
        raise StoreFailure(f"Store write failed: {exc}") from exc
    except BaseException:
        conn.rollback()
        raise

    try:
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        logger.error("Commit failed, rolled back: %s", exc)
        raise StoreFailure(f"Commit failed: {exc}") from exc


# ----------------------------
# Encoding boundary
# ----------------------------

def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _load(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Undecodable JSON column, using default")
        return default


def _encode_competencies(comps: Sequence[Competency]) -> str:
    out: List[Dict[str, Any]] = []
    for c in comps:
        item: Dict[str, Any] = {"name": c.name, "proficiency": int(c.proficiency)}
        if c.sources:
            item["sources"] = list(c.sources)
        out.append(item)
    return _dump(out)


def _decode_competencies(raw: Optional[str]) -> List[Competency]:
    out: List[Competency] = []
    seen = set()
    for item in _load(raw, []):
        if isinstance(item, str):
            name, level, sources = item, 1, []
        elif isinstance(item, dict) and item.get("name"):
            name = str(item["name"])
            # "level" is the older column shape
            level = int(item.get("proficiency") or item.get("level") or 1)
            sources = [str(s) for s in item.get("sources") or []]
        else:
            continue
        if name in seen:
            continue
        seen.add(name)
        out.append(Competency(name=name, proficiency=level, sources=sources))
    return out


def _entity_from_row(row: sqlite3.Row) -> ContextEntity:
    return ContextEntity(
        id=str(row["id"]),
        chitty_id=str(row["chitty_id"]),
        context_hash=str(row["context_hash"]),
        project_path=str(row["project_path"]),
        workspace=row["workspace"],
        support_type=str(row["support_type"]),
        organization=row["organization"],
        signature=str(row["signature"]),
        issuer=Issuer(row["issuer"]),
        trust_score=float(row["trust_score"]),
        trust_level=clamp_trust_level(row["trust_level"]),
        status=ContextStatus(row["status"]),
        version=int(row["version"]),
        total_sessions=int(row["total_sessions"] or 0),
        last_activity=row["last_activity"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _dna_from_row(row: sqlite3.Row) -> ContextDNA:
    if row["dna_id"] is None:
        return ContextDNA()
    return ContextDNA(
        competencies=_decode_competencies(row["competencies_json"]),
        domains=[str(d) for d in _load(row["domains_json"], [])],
        total_interactions=int(row["total_interactions"] or 0),
        total_decisions=int(row["total_decisions"] or 0),
        success_rate=float(row["success_rate"] or 0.0),
        anomaly_count=int(row["anomaly_count"] or 0),
        last_anomaly_at=row["last_anomaly_at"],
    )


_PROFILE_SELECT = """
    SELECT ce.*,
           cd.id AS dna_id, cd.competencies_json, cd.domains_json,
           cd.total_interactions, cd.total_decisions, cd.success_rate,
           cd.anomaly_count, cd.last_anomaly_at
    FROM context_entities ce
    LEFT JOIN context_dna cd ON cd.context_id = ce.id
"""


def _profile_from_row(row: sqlite3.Row) -> ContextProfile:
    return ContextProfile(entity=_entity_from_row(row), dna=_dna_from_row(row))


# ----------------------------
# Profile reads
# ----------------------------

def load_profile(
    conn: sqlite3.Connection,
    chitty_id: str,
    *,
    include_terminal: bool = False,
) -> Optional[ContextProfile]:
    """Active/dormant profile by identifier. Terminal rows only with include_terminal."""
    if include_terminal:
        row = conn.execute(_PROFILE_SELECT + " WHERE ce.chitty_id = ? LIMIT 1", (chitty_id,)).fetchone()
    else:
        row = conn.execute(
            _PROFILE_SELECT + " WHERE ce.chitty_id = ? AND ce.status IN (?, ?) LIMIT 1",
            (chitty_id, *LIVE_STATUSES),
        ).fetchone()
    if not row:
        return None
    return _profile_from_row(row)


def find_by_hash(conn: sqlite3.Connection, context_hash: str) -> Optional[ContextProfile]:
    row = conn.execute(
        _PROFILE_SELECT + " WHERE ce.context_hash = ? AND ce.status IN (?, ?) LIMIT 1",
        (context_hash, *LIVE_STATUSES),
    ).fetchone()
    if not row:
        return None
    return _profile_from_row(row)


def find_alternatives(
    conn: sqlite3.Connection,
    *,
    exclude_chitty_id: str,
    project_path: Optional[str],
    support_type: Optional[str],
    limit: int = 10,
) -> List[ContextProfile]:
    """Live contexts sharing the project path or support type."""
    rows = conn.execute(
        _PROFILE_SELECT
        + """
        WHERE ce.status IN (?, ?) AND ce.chitty_id != ?
          AND (ce.project_path = ? OR ce.support_type = ?)
        ORDER BY ce.trust_level DESC, ce.created_at ASC
        LIMIT ?
        """,
        (*LIVE_STATUSES, exclude_chitty_id, project_path or "", support_type or "", int(limit)),
    ).fetchall()
    return [_profile_from_row(r) for r in rows]


def list_active_profiles(
    conn: sqlite3.Connection,
    *,
    min_trust_level: int = 0,
    limit: int = 50,
) -> List[ContextProfile]:
    rows = conn.execute(
        _PROFILE_SELECT
        + """
        WHERE ce.status = 'active' AND ce.trust_level >= ?
        ORDER BY ce.trust_score DESC
        LIMIT ?
        """,
        (int(min_trust_level), int(limit)),
    ).fetchall()
    return [_profile_from_row(r) for r in rows]


# ----------------------------
# Entity + DNA writes
# ----------------------------

def insert_entity(
    conn: sqlite3.Connection,
    *,
    chitty_id: str,
    context_hash: str,
    project_path: str,
    workspace: Optional[str],
    support_type: str,
    organization: Optional[str],
    signature: str,
    issuer: Issuer,
    trust_score: float,
    trust_level: int,
) -> ContextEntity:
    now = utc_now_iso()
    eid = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO context_entities
          (id, chitty_id, context_hash, project_path, workspace, support_type, organization,
           signature, issuer, trust_score, trust_level, status, version, total_sessions,
           last_activity, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', 1, 0, ?, ?, ?)
        """,
        (
            eid,
            chitty_id,
            context_hash,
            project_path,
            workspace,
            support_type,
            organization,
            signature,
            issuer.value,
            float(trust_score),
            clamp_trust_level(trust_level),
            now,
            now,
            now,
        ),
    )
    return ContextEntity(
        id=eid,
        chitty_id=chitty_id,
        context_hash=context_hash,
        project_path=project_path,
        workspace=workspace,
        support_type=support_type,
        organization=organization,
        signature=signature,
        issuer=issuer,
        trust_score=float(trust_score),
        trust_level=clamp_trust_level(trust_level),
        status=ContextStatus.ACTIVE,
        version=1,
        last_activity=now,
        created_at=now,
        updated_at=now,
    )


def insert_dna(conn: sqlite3.Connection, *, entity: ContextEntity, dna: ContextDNA) -> None:
    conn.execute(
        """
        INSERT INTO context_dna
          (id, context_id, context_chitty_id, competencies_json, domains_json,
           total_interactions, total_decisions, success_rate, anomaly_count, last_anomaly_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            entity.id,
            entity.chitty_id,
            _encode_competencies(dna.competencies),
            _dump(list(dna.domains)),
            int(dna.total_interactions),
            int(dna.total_decisions),
            float(dna.success_rate),
            int(dna.anomaly_count),
            dna.last_anomaly_at,
            utc_now_iso(),
        ),
    )


def _bump_version(conn: sqlite3.Connection, entity: ContextEntity) -> None:
    cur = conn.execute(
        """
        UPDATE context_entities
        SET version = version + 1, updated_at = ?
        WHERE id = ? AND version = ? AND status IN (?, ?)
        """,
        (utc_now_iso(), entity.id, int(entity.version), *LIVE_STATUSES),
    )
    if not cur.rowcount:
        logger.warning("Version conflict updating DNA of %s (expected v%s)", entity.chitty_id, entity.version)
        raise LifecycleConflict(
            f"Context {entity.chitty_id} changed concurrently or is no longer active",
            details={"chitty_id": entity.chitty_id, "expected_version": int(entity.version)},
        )


def update_dna(conn: sqlite3.Connection, *, entity: ContextEntity, dna: ContextDNA) -> None:
    """
    Replace the DNA of a live entity.

    `entity` must carry the version the caller read; a stale version or a
    terminal entity raises LifecycleConflict and nothing is written.
    """
    _bump_version(conn, entity)
    cur = conn.execute(
        """
        UPDATE context_dna
        SET competencies_json = ?, domains_json = ?, total_interactions = ?, total_decisions = ?,
            success_rate = ?, anomaly_count = ?, last_anomaly_at = ?, updated_at = ?
        WHERE context_id = ?
        """,
        (
            _encode_competencies(dna.competencies),
            _dump(list(dna.domains)),
            int(dna.total_interactions),
            int(dna.total_decisions),
            float(dna.success_rate),
            int(dna.anomaly_count),
            dna.last_anomaly_at,
            utc_now_iso(),
            entity.id,
        ),
    )
    if not cur.rowcount:
        insert_dna(conn, entity=entity, dna=dna)


def record_session(conn: sqlite3.Connection, *, entity: ContextEntity) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE context_entities
        SET total_sessions = total_sessions + 1, last_activity = ?, updated_at = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (now, now, entity.id, *LIVE_STATUSES),
    )


def transition_status(
    conn: sqlite3.Connection,
    *,
    chitty_id: str,
    expected_version: int,
    new_status: ContextStatus,
) -> int:
    """
    Move a live entity into a terminal status. Returns the new version.

    The version must still match what the caller read; otherwise another
    operation already changed the row and LifecycleConflict is raised.
    """
    if not new_status.is_terminal:
        raise ValueError(f"transition_status only moves into terminal states, got {new_status.value}")
    cur = conn.execute(
        """
        UPDATE context_entities
        SET status = ?, version = version + 1, updated_at = ?
        WHERE chitty_id = ? AND version = ? AND status IN (?, ?)
        """,
        (new_status.value, utc_now_iso(), chitty_id, int(expected_version), *LIVE_STATUSES),
    )
    if not cur.rowcount:
        logger.warning("Version conflict moving %s to %s (expected v%s)", chitty_id, new_status.value, expected_version)
        raise LifecycleConflict(
            f"Context {chitty_id} changed concurrently or is no longer active",
            details={"chitty_id": chitty_id, "expected_version": int(expected_version)},
        )
    return int(expected_version) + 1


# ----------------------------
# Lifecycle events
# ----------------------------

def append_event(
    conn: sqlite3.Connection,
    *,
    event_type: LifecycleEventType,
    source_ids: Sequence[str],
    result_ids: Sequence[str],
    trigger_reason: Optional[str] = None,
    analysis: Optional[Dict[str, Any]] = None,
    user_confirmed: bool = False,
) -> LifecycleEvent:
    eid = str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO context_lifecycle_events (id, event_type, trigger_reason, analysis_json, user_confirmed, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (eid, event_type.value, trigger_reason, _dump(to_plain(analysis or {})), 1 if user_confirmed else 0, now),
    )
    for role, ids in (("source", source_ids), ("result", result_ids)):
        for pos, cid in enumerate(ids):
            conn.execute(
                "INSERT INTO lifecycle_event_contexts (event_id, chitty_id, role, position) VALUES (?, ?, ?, ?)",
                (eid, cid, role, pos),
            )
    return LifecycleEvent(
        id=eid,
        event_type=event_type.value,
        source_ids=list(source_ids),
        result_ids=list(result_ids),
        trigger_reason=trigger_reason,
        analysis=to_plain(analysis or {}),
        user_confirmed=bool(user_confirmed),
        created_at=now,
    )


def _event_contexts(conn: sqlite3.Connection, event_id: str, role: str) -> List[str]:
    rows = conn.execute(
        """
        SELECT chitty_id FROM lifecycle_event_contexts
        WHERE event_id = ? AND role = ?
        ORDER BY position ASC
        """,
        (event_id, role),
    ).fetchall()
    return [str(r["chitty_id"]) for r in rows]


def _event_from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> LifecycleEvent:
    return LifecycleEvent(
        id=str(row["id"]),
        event_type=str(row["event_type"]),
        source_ids=_event_contexts(conn, str(row["id"]), "source"),
        result_ids=_event_contexts(conn, str(row["id"]), "result"),
        trigger_reason=row["trigger_reason"],
        analysis=_load(row["analysis_json"], {}),
        user_confirmed=bool(row["user_confirmed"]),
        created_at=row["created_at"],
    )


def list_lifecycle_events(
    conn: sqlite3.Connection,
    *,
    chitty_id: Optional[str] = None,
    event_type: Optional[LifecycleEventType] = None,
    limit: int = 100,
) -> List[LifecycleEvent]:
    clauses: List[str] = []
    params: List[Any] = []
    if chitty_id:
        clauses.append("id IN (SELECT event_id FROM lifecycle_event_contexts WHERE chitty_id = ?)")
        params.append(chitty_id)
    if event_type:
        clauses.append("event_type = ?")
        params.append(event_type.value)
    where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
    params.append(int(limit))
    rows = conn.execute(
        f"SELECT * FROM context_lifecycle_events{where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
        tuple(params),
    ).fetchall()
    return [_event_from_row(conn, r) for r in rows]


def find_creation_event(
    conn: sqlite3.Connection,
    *,
    result_chitty_id: str,
    event_type: LifecycleEventType,
) -> Optional[LifecycleEvent]:
    row = conn.execute(
        """
        SELECT e.* FROM context_lifecycle_events e
        JOIN lifecycle_event_contexts x ON x.event_id = e.id
        WHERE x.chitty_id = ? AND x.role = 'result' AND e.event_type = ?
        ORDER BY e.created_at ASC
        LIMIT 1
        """,
        (result_chitty_id, event_type.value),
    ).fetchone()
    if not row:
        return None
    return _event_from_row(conn, row)


# ----------------------------
# Suspension membership
# ----------------------------

def add_suspension_members(conn: sqlite3.Connection, *, suspension_chitty_id: str, member_ids: Sequence[str]) -> None:
    for pos, mid in enumerate(member_ids):
        conn.execute(
            "INSERT INTO suspension_members (suspension_chitty_id, member_chitty_id, position) VALUES (?, ?, ?)",
            (suspension_chitty_id, mid, pos),
        )


def get_suspension_members(conn: sqlite3.Connection, suspension_chitty_id: str) -> List[str]:
    rows = conn.execute(
        """
        SELECT member_chitty_id FROM suspension_members
        WHERE suspension_chitty_id = ?
        ORDER BY position ASC
        """,
        (suspension_chitty_id,),
    ).fetchall()
    return [str(r["member_chitty_id"]) for r in rows]


def list_active_suspensions(conn: sqlite3.Connection) -> List[ContextProfile]:
    rows = conn.execute(
        _PROFILE_SELECT + " WHERE ce.issuer = 'suspension' AND ce.status = 'active' ORDER BY ce.created_at ASC"
    ).fetchall()
    return [_profile_from_row(r) for r in rows]


# ----------------------------
# Pairs
# ----------------------------

def insert_pair(
    conn: sqlite3.Connection,
    *,
    chitty_id_1: str,
    chitty_id_2: str,
    relationship: str,
    complementarity: str,
    overlap: Sequence[str],
    unique_1: Sequence[str],
    unique_2: Sequence[str],
    settings: Optional[Dict[str, Any]] = None,
) -> ContextPair:
    pid = str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO context_pairs
          (id, chitty_id_1, chitty_id_2, relationship_type, complementarity,
           overlap_json, unique_1_json, unique_2_json, settings_json, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?)
        """,
        (
            pid,
            chitty_id_1,
            chitty_id_2,
            relationship,
            complementarity,
            _dump(list(overlap)),
            _dump(list(unique_1)),
            _dump(list(unique_2)),
            _dump(settings or {}),
            now,
        ),
    )
    return ContextPair(
        id=pid,
        chitty_id_1=chitty_id_1,
        chitty_id_2=chitty_id_2,
        relationship=relationship,
        complementarity=complementarity,
        overlap=list(overlap),
        unique_1=list(unique_1),
        unique_2=list(unique_2),
        settings=dict(settings or {}),
        created_at=now,
    )


def list_pairs(conn: sqlite3.Connection, chitty_id: str) -> List[ContextPair]:
    rows = conn.execute(
        """
        SELECT * FROM context_pairs
        WHERE (chitty_id_1 = ? OR chitty_id_2 = ?) AND status = 'active'
        ORDER BY created_at ASC
        """,
        (chitty_id, chitty_id),
    ).fetchall()
    return [
        ContextPair(
            id=str(r["id"]),
            chitty_id_1=str(r["chitty_id_1"]),
            chitty_id_2=str(r["chitty_id_2"]),
            relationship=str(r["relationship_type"]),
            complementarity=str(r["complementarity"]),
            overlap=_load(r["overlap_json"], []),
            unique_1=_load(r["unique_1_json"], []),
            unique_2=_load(r["unique_2_json"], []),
            settings=_load(r["settings_json"], {}),
            status=str(r["status"]),
            created_at=r["created_at"],
        )
        for r in rows
    ]


# ----------------------------
# Collaborations
# ----------------------------

def insert_collaboration(
    conn: sqlite3.Connection,
    *,
    kind: CollaborationKind,
    parent_chitty_id: Optional[str],
    child_chitty_id: Optional[str],
    project_id: Optional[str],
    scope: Dict[str, Any],
    permissions: Sequence[str],
    members: Dict[str, str],
) -> Collaboration:
    cid = str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO context_collaborations
          (id, kind, parent_chitty_id, child_chitty_id, project_id, scope_json, permissions_json, status, started_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?)
        """,
        (cid, kind.value, parent_chitty_id, child_chitty_id, project_id, _dump(scope), _dump(list(permissions)), now),
    )
    for member_id, role in members.items():
        conn.execute(
            "INSERT INTO collaboration_members (collaboration_id, chitty_id, role) VALUES (?, ?, ?)",
            (cid, member_id, role),
        )
    return Collaboration(
        id=cid,
        kind=kind,
        parent_chitty_id=parent_chitty_id,
        child_chitty_id=child_chitty_id,
        project_id=project_id,
        scope=dict(scope),
        permissions=list(permissions),
        started_at=now,
        members=dict(members),
    )


def get_collaboration(
    conn: sqlite3.Connection,
    collaboration_id: str,
    *,
    kind: Optional[CollaborationKind] = None,
) -> Optional[Collaboration]:
    if kind is None:
        row = conn.execute("SELECT * FROM context_collaborations WHERE id = ? LIMIT 1", (collaboration_id,)).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM context_collaborations WHERE id = ? AND kind = ? LIMIT 1",
            (collaboration_id, kind.value),
        ).fetchone()
    if not row:
        return None
    member_rows = conn.execute(
        "SELECT chitty_id, role FROM collaboration_members WHERE collaboration_id = ? ORDER BY rowid ASC",
        (collaboration_id,),
    ).fetchall()
    return Collaboration(
        id=str(row["id"]),
        kind=CollaborationKind(row["kind"]),
        parent_chitty_id=row["parent_chitty_id"],
        child_chitty_id=row["child_chitty_id"],
        project_id=row["project_id"],
        scope=_load(row["scope_json"], {}),
        permissions=_load(row["permissions_json"], []),
        status=str(row["status"]),
        started_at=row["started_at"],
        members={str(m["chitty_id"]): str(m["role"]) for m in member_rows},
    )


def list_collaborations(conn: sqlite3.Connection, chitty_id: str) -> List[Collaboration]:
    rows = conn.execute(
        """
        SELECT DISTINCT c.id FROM context_collaborations c
        LEFT JOIN collaboration_members m ON m.collaboration_id = c.id
        WHERE c.status = 'active'
          AND (c.parent_chitty_id = ? OR c.child_chitty_id = ? OR m.chitty_id = ?)
        ORDER BY c.started_at ASC
        """,
        (chitty_id, chitty_id, chitty_id),
    ).fetchall()
    out: List[Collaboration] = []
    for r in rows:
        collab = get_collaboration(conn, str(r["id"]))
        if collab:
            out.append(collab)
    return out


# ----------------------------
# Identity reconciliation
# ----------------------------

def record_reconciliation(
    conn: sqlite3.Connection,
    *,
    chitty_id: str,
    entity_type: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO identity_reconciliation (chitty_id, entity_type, metadata_json, created_at, reconciled_at)
        VALUES (?, ?, ?, ?, NULL)
        """,
        (chitty_id, entity_type, _dump(metadata or {}), utc_now_iso()),
    )


def list_reconciliation(conn: sqlite3.Connection, *, pending_only: bool = True, limit: int = 200) -> List[Dict[str, Any]]:
    if pending_only:
        rows = conn.execute(
            """
            SELECT chitty_id, entity_type, metadata_json, created_at, reconciled_at
            FROM identity_reconciliation
            WHERE reconciled_at IS NULL
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT chitty_id, entity_type, metadata_json, created_at, reconciled_at
            FROM identity_reconciliation
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()

    out: List[Dict[str, Any]] = []
    for r in rows:
        item = dict(r)
        item["metadata"] = _load(item.pop("metadata_json", None), {})
        out.append(item)
    return out
