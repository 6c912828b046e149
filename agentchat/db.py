"""SQLite persistence layer."""

from __future__ import annotations

import json
import math
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Iterator

from agentchat.models import (
    Agent,
    ApiTool,
    AvailabilityWindow,
    CalendarConnection,
    ConversationTurn,
    ExtractedEvent,
    Feature,
    FeatureFlag,
    KnowledgeChunk,
    KnowledgeItem,
    SchedulingSettings,
    ToolServer,
)

SCHEMA_VERSION = 1

_FLAG_COLUMNS: dict[Feature, str] = {
    Feature.KNOWLEDGE_BASE: "use_knowledge_base",
    Feature.TOOL_SERVERS: "tool_servers_enabled",
    Feature.API_TOOLS: "api_enabled",
    Feature.SCHEDULING: "scheduling_enabled",
    Feature.EVENTS: "events_access",
    Feature.WEB_SEARCH: "web_search_enabled",
}


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                owner_address TEXT NOT NULL,
                name TEXT NOT NULL,
                system_instructions TEXT,
                visibility TEXT NOT NULL DEFAULT 'private',
                avatar_emoji TEXT,
                use_knowledge_base INTEGER,
                tool_servers_enabled INTEGER,
                api_enabled INTEGER,
                scheduling_enabled INTEGER,
                events_access INTEGER,
                web_search_enabled INTEGER,
                tool_servers_json TEXT NOT NULL DEFAULT '[]',
                api_tools_json TEXT NOT NULL DEFAULT '[]',
                message_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS friends (
                user_address TEXT NOT NULL,
                friend_address TEXT NOT NULL,
                PRIMARY KEY (user_address, friend_address)
            );

            CREATE TABLE IF NOT EXISTS agent_chats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                user_address TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                source TEXT NOT NULL,
                model TEXT,
                tool_calls_json TEXT,
                tool_errors_json TEXT,
                input_tokens INTEGER,
                output_tokens INTEGER,
                total_tokens INTEGER,
                latency_ms INTEGER,
                estimated_cost_usd REAL,
                error_code TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_agent_chats_pair
                ON agent_chats(agent_id, user_address, id);

            CREATE TABLE IF NOT EXISTS knowledge_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                url TEXT NOT NULL,
                title TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS knowledge_chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                knowledge_id INTEGER NOT NULL,
                content TEXT NOT NULL,
                embedding_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(knowledge_id) REFERENCES knowledge_items(id)
            );

            CREATE TABLE IF NOT EXISTS scheduling_settings (
                owner_address TEXT PRIMARY KEY,
                enabled INTEGER NOT NULL DEFAULT 0,
                free_enabled INTEGER NOT NULL DEFAULT 1,
                paid_enabled INTEGER NOT NULL DEFAULT 0,
                free_duration_minutes INTEGER,
                paid_duration_minutes INTEGER,
                price_cents INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS availability_windows (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_address TEXT NOT NULL,
                day_of_week INTEGER NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                timezone TEXT NOT NULL DEFAULT 'UTC',
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS calendar_connections (
                owner_address TEXT NOT NULL,
                provider TEXT NOT NULL,
                access_token TEXT NOT NULL,
                refresh_token TEXT,
                token_expires_at TEXT,
                calendar_id TEXT NOT NULL DEFAULT 'primary',
                is_active INTEGER NOT NULL DEFAULT 1,
                PRIMARY KEY (owner_address, provider)
            );

            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                event_type TEXT,
                event_date TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                venue TEXT,
                city TEXT,
                country TEXT,
                is_virtual INTEGER NOT NULL DEFAULT 0,
                organizer TEXT,
                event_url TEXT,
                rsvp_url TEXT,
                registration_enabled INTEGER NOT NULL DEFAULT 0,
                is_featured INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'published'
            );

            CREATE TABLE IF NOT EXISTS agent_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                knowledge_id INTEGER,
                name TEXT NOT NULL,
                description TEXT,
                event_type TEXT,
                event_date TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT,
                venue TEXT,
                organizer TEXT,
                event_url TEXT,
                source TEXT NOT NULL DEFAULT 'community',
                is_verified INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE(agent_id, name COLLATE NOCASE, event_date)
            );
            """
        )

    # Agents

    def upsert_agent(self, agent: Agent) -> None:
        flags = {
            column: _flag_to_db(agent.features.get(feature, FeatureFlag.UNSET))
            for feature, column in _FLAG_COLUMNS.items()
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agents(
                    id, owner_address, name, system_instructions, visibility, avatar_emoji,
                    use_knowledge_base, tool_servers_enabled, api_enabled, scheduling_enabled,
                    events_access, web_search_enabled, tool_servers_json, api_tools_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_address=excluded.owner_address,
                    name=excluded.name,
                    system_instructions=excluded.system_instructions,
                    visibility=excluded.visibility,
                    avatar_emoji=excluded.avatar_emoji,
                    use_knowledge_base=excluded.use_knowledge_base,
                    tool_servers_enabled=excluded.tool_servers_enabled,
                    api_enabled=excluded.api_enabled,
                    scheduling_enabled=excluded.scheduling_enabled,
                    events_access=excluded.events_access,
                    web_search_enabled=excluded.web_search_enabled,
                    tool_servers_json=excluded.tool_servers_json,
                    api_tools_json=excluded.api_tools_json
                """,
                (
                    agent.id,
                    agent.owner_address.lower(),
                    agent.name,
                    agent.system_instructions,
                    agent.visibility,
                    agent.avatar_emoji,
                    flags["use_knowledge_base"],
                    flags["tool_servers_enabled"],
                    flags["api_enabled"],
                    flags["scheduling_enabled"],
                    flags["events_access"],
                    flags["web_search_enabled"],
                    json.dumps([asdict(s) for s in agent.tool_servers]),
                    json.dumps([asdict(t) for t in agent.api_tools]),
                    _utc_now_iso(),
                ),
            )

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        if row is None:
            return None
        features = {
            feature: FeatureFlag.from_value(None if row[column] is None else bool(row[column]))
            for feature, column in _FLAG_COLUMNS.items()
        }
        return Agent(
            id=row["id"],
            owner_address=row["owner_address"],
            name=row["name"],
            system_instructions=row["system_instructions"] or "",
            visibility=row["visibility"],
            avatar_emoji=row["avatar_emoji"],
            features=features,
            tool_servers=tuple(ToolServer(**s) for s in json.loads(row["tool_servers_json"])),
            api_tools=tuple(ApiTool(**t) for t in json.loads(row["api_tools_json"])),
        )

    def increment_agent_messages(self, agent_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE agents SET message_count = message_count + 1 WHERE id = ?", (agent_id,))

    def get_agent_message_count(self, agent_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT message_count FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return int(row["message_count"]) if row else 0

    def add_friendship(self, user_address: str, friend_address: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO friends(user_address, friend_address) VALUES (?, ?)",
                (user_address.lower(), friend_address.lower()),
            )

    def are_friends(self, a: str, b: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM friends
                WHERE (user_address = ? AND friend_address = ?)
                   OR (user_address = ? AND friend_address = ?)
                LIMIT 1
                """,
                (a, b, b, a),
            ).fetchone()
        return row is not None

    # Chat turns

    def add_chat_turn(self, turn: ConversationTurn) -> int:
        usage = turn.usage
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO agent_chats(
                    agent_id, user_address, role, content, source, model, tool_calls_json,
                    tool_errors_json, input_tokens, output_tokens, total_tokens, latency_ms,
                    estimated_cost_usd, error_code, error_message, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    turn.agent_id,
                    turn.user_address,
                    turn.role,
                    turn.content,
                    turn.source,
                    turn.model,
                    json.dumps([asdict(c) for c in turn.tool_calls]) if turn.tool_calls else None,
                    json.dumps([asdict(e) for e in turn.tool_errors]) if turn.tool_errors else None,
                    usage.input_tokens if usage else None,
                    usage.output_tokens if usage else None,
                    usage.total_tokens if usage else None,
                    usage.latency_ms if usage else None,
                    usage.estimated_cost_usd if usage else None,
                    usage.error_code if usage else None,
                    usage.error_message if usage else None,
                    (turn.created_at or datetime.now(timezone.utc)).isoformat(),
                ),
            )
            return int(cur.lastrowid)

    def get_recent_turns(self, agent_id: str, user_address: str, limit: int) -> list[dict[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content
                FROM agent_chats
                WHERE agent_id = ? AND user_address = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (agent_id, user_address, limit),
            ).fetchall()
        ordered = list(reversed(rows))
        return [{"role": row["role"], "content": row["content"]} for row in ordered]

    def get_chat_history(self, agent_id: str, user_address: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM agent_chats
                WHERE agent_id = ? AND user_address = ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (agent_id, user_address, limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def clear_chat_history(self, agent_id: str, user_address: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM agent_chats WHERE agent_id = ? AND user_address = ?",
                (agent_id, user_address),
            )

    # Knowledge

    def add_knowledge_item(self, agent_id: str, url: str, title: str, status: str = "pending") -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO knowledge_items(agent_id, url, title, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (agent_id, url, title, status, _utc_now_iso()),
            )
            return int(cur.lastrowid)

    def list_pending_knowledge(self, agent_id: str, limit: int = 3) -> list[KnowledgeItem]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, agent_id, url, title, status FROM knowledge_items
                WHERE agent_id = ? AND status = 'pending'
                ORDER BY id ASC
                LIMIT ?
                """,
                (agent_id, limit),
            ).fetchall()
        return [KnowledgeItem(**dict(row)) for row in rows]

    def add_knowledge_chunk(self, agent_id: str, knowledge_id: int, content: str, embedding: list[float]) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO knowledge_chunks(agent_id, knowledge_id, content, embedding_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (agent_id, knowledge_id, content, json.dumps(embedding), _utc_now_iso()),
            )
            return int(cur.lastrowid)

    def match_knowledge_chunks(
        self,
        agent_id: str,
        embedding: list[float],
        match_count: int,
        threshold: float,
    ) -> list[KnowledgeChunk]:
        """Cosine-similarity search over an agent's chunks, best first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.content, c.embedding_json, k.title AS source_title
                FROM knowledge_chunks c
                LEFT JOIN knowledge_items k ON k.id = c.knowledge_id
                WHERE c.agent_id = ?
                """,
                (agent_id,),
            ).fetchall()

        scored: list[KnowledgeChunk] = []
        for row in rows:
            similarity = _cosine_similarity(embedding, json.loads(row["embedding_json"]))
            if similarity >= threshold:
                scored.append(KnowledgeChunk(row["content"], similarity, row["source_title"]))
        scored.sort(key=lambda chunk: chunk.similarity, reverse=True)
        return scored[:match_count]

    def list_knowledge_chunks(
        self, agent_id: str, knowledge_id: int | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        query = """
            SELECT c.id, c.content, c.knowledge_id, k.title AS source_title
            FROM knowledge_chunks c
            LEFT JOIN knowledge_items k ON k.id = c.knowledge_id
            WHERE c.agent_id = ?
        """
        params: list[Any] = [agent_id]
        if knowledge_id is not None:
            query += " AND c.knowledge_id = ?"
            params.append(knowledge_id)
        query += " ORDER BY c.id ASC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    # Scheduling

    def save_scheduling_settings(self, owner_address: str, settings: SchedulingSettings) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduling_settings(
                    owner_address, enabled, free_enabled, paid_enabled,
                    free_duration_minutes, paid_duration_minutes, price_cents
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_address) DO UPDATE SET
                    enabled=excluded.enabled,
                    free_enabled=excluded.free_enabled,
                    paid_enabled=excluded.paid_enabled,
                    free_duration_minutes=excluded.free_duration_minutes,
                    paid_duration_minutes=excluded.paid_duration_minutes,
                    price_cents=excluded.price_cents
                """,
                (
                    owner_address.lower(),
                    int(settings.enabled),
                    int(settings.free_enabled),
                    int(settings.paid_enabled),
                    settings.free_duration_minutes,
                    settings.paid_duration_minutes,
                    settings.price_cents,
                ),
            )

    def get_scheduling_settings(self, owner_address: str) -> SchedulingSettings | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scheduling_settings WHERE owner_address = ?", (owner_address,)
            ).fetchone()
        if row is None:
            return None
        return SchedulingSettings(
            enabled=bool(row["enabled"]),
            free_enabled=bool(row["free_enabled"]),
            paid_enabled=bool(row["paid_enabled"]),
            free_duration_minutes=row["free_duration_minutes"],
            paid_duration_minutes=row["paid_duration_minutes"],
            price_cents=row["price_cents"],
        )

    def add_availability_window(self, owner_address: str, window: AvailabilityWindow, is_active: bool = True) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO availability_windows(owner_address, day_of_week, start_time, end_time, timezone, is_active)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    owner_address.lower(),
                    window.day_of_week,
                    window.start_time.strftime("%H:%M"),
                    window.end_time.strftime("%H:%M"),
                    window.timezone,
                    int(is_active),
                ),
            )
            return int(cur.lastrowid)

    def list_availability_windows(self, owner_address: str) -> list[AvailabilityWindow]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT day_of_week, start_time, end_time, timezone FROM availability_windows
                WHERE owner_address = ? AND is_active = 1
                ORDER BY id ASC
                """,
                (owner_address,),
            ).fetchall()
        return [
            AvailabilityWindow(
                day_of_week=row["day_of_week"],
                start_time=time.fromisoformat(row["start_time"]),
                end_time=time.fromisoformat(row["end_time"]),
                timezone=row["timezone"] or "UTC",
            )
            for row in rows
        ]

    def save_calendar_connection(self, connection: CalendarConnection) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO calendar_connections(
                    owner_address, provider, access_token, refresh_token, token_expires_at, calendar_id, is_active
                )
                VALUES (?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(owner_address, provider) DO UPDATE SET
                    access_token=excluded.access_token,
                    refresh_token=excluded.refresh_token,
                    token_expires_at=excluded.token_expires_at,
                    calendar_id=excluded.calendar_id,
                    is_active=1
                """,
                (
                    connection.owner_address.lower(),
                    connection.provider,
                    connection.access_token,
                    connection.refresh_token,
                    connection.token_expires_at.isoformat() if connection.token_expires_at else None,
                    connection.calendar_id,
                ),
            )

    def get_calendar_connection(self, owner_address: str, provider: str = "google") -> CalendarConnection | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM calendar_connections
                WHERE owner_address = ? AND provider = ? AND is_active = 1
                """,
                (owner_address, provider),
            ).fetchone()
        if row is None:
            return None
        expires = row["token_expires_at"]
        return CalendarConnection(
            owner_address=row["owner_address"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=datetime.fromisoformat(expires) if expires else None,
            calendar_id=row["calendar_id"] or "primary",
            provider=row["provider"],
        )

    def update_calendar_token(
        self, owner_address: str, access_token: str, expires_at: datetime, provider: str = "google"
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE calendar_connections SET access_token = ?, token_expires_at = ?
                WHERE owner_address = ? AND provider = ?
                """,
                (access_token, expires_at.isoformat(), owner_address, provider),
            )

    # Events

    def add_event(self, event: dict[str, Any]) -> int:
        columns = ", ".join(event)
        placeholders = ", ".join("?" for _ in event)
        with self._connect() as conn:
            cur = conn.execute(f"INSERT INTO events({columns}) VALUES ({placeholders})", tuple(event.values()))
            return int(cur.lastrowid)

    def list_upcoming_events(self, today: date, limit: int = 40) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM events
                WHERE status = 'published' AND event_date >= ?
                ORDER BY is_featured DESC, event_date ASC
                LIMIT ?
                """,
                (today.isoformat(), limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def insert_agent_event(self, agent_id: str, event: ExtractedEvent, knowledge_id: int | None = None) -> bool:
        """Insert an extracted event; returns False when it already exists."""

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO agent_events(
                        agent_id, knowledge_id, name, description, event_type, event_date, start_time,
                        end_time, venue, organizer, event_url, source, is_verified, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        agent_id,
                        knowledge_id,
                        event.name,
                        event.description,
                        event.event_type,
                        event.event_date,
                        event.start_time,
                        event.end_time,
                        event.venue,
                        event.organizer,
                        event.event_url,
                        event.source,
                        _utc_now_iso(),
                    ),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def list_agent_events(self, agent_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM agent_events WHERE agent_id = ? ORDER BY event_date ASC, id ASC", (agent_id,)
            ).fetchall()
        return [dict(row) for row in rows]


def _flag_to_db(flag: FeatureFlag) -> int | None:
    if flag is FeatureFlag.UNSET:
        return None
    return int(flag is FeatureFlag.ENABLED)


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
