from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authsync.logging import get_logger
from authsync.storage.common import (
    as_utc,
    generate_uuid,
    normalize_email,
    parse_json_payload,
    safe_row_value,
    validate_principal_fields,
)
from authsync.storage.errors import DuplicateEmail, UnknownPrincipal
from authsync.storage.models import (
    STATUS_ACTIVE,
    STATUS_PENDING,
    CacheEntry,
    DeviceSession,
    Principal,
    Profile,
    profile_from_dict,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        status TEXT NOT NULL DEFAULT 'pending',
        profile JSONB,
        otp_code TEXT,
        otp_expires_at TIMESTAMPTZ,
        otp_verified_at TIMESTAMPTZ,
        reset_code TEXT,
        reset_expires_at TIMESTAMPTZ,
        refresh_token_fingerprint TEXT,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS device_session (
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        device_id TEXT NOT NULL,
        device_name TEXT,
        device_platform TEXT,
        app_version TEXT,
        last_ip INET,
        last_active_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (principal_id, device_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS offline_cache (
        principal_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        entity TEXT NOT NULL,
        key TEXT NOT NULL,
        payload JSONB NOT NULL,
        version BIGINT NOT NULL,
        checksum TEXT NOT NULL,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (principal_id, device_id, entity, key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS offline_cache_owner_entity_idx "
    "ON offline_cache (principal_id, device_id, entity)",
)

_PRINCIPAL_COLUMNS = frozenset({
    "role",
    "status",
    "otp_code",
    "otp_expires_at",
    "otp_verified_at",
    "reset_code",
    "reset_expires_at",
    "password_hash",
    "refresh_token_fingerprint",
    "last_login_at",
})


class PostgresStore:
    """Postgres-backed store for principals, device sessions and cache entries."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the three core tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=3)

    # row mapping
    def _row_to_principal(self, row: Any) -> Principal:
        role = safe_row_value(row, "role", "user")
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=role,
            status=safe_row_value(row, "status", STATUS_PENDING),
            profile=profile_from_dict(role, parse_json_payload(safe_row_value(row, "profile"))),
            otp_code=safe_row_value(row, "otp_code"),
            otp_expires_at=as_utc(safe_row_value(row, "otp_expires_at")),
            otp_verified_at=as_utc(safe_row_value(row, "otp_verified_at")),
            reset_code=safe_row_value(row, "reset_code"),
            reset_expires_at=as_utc(safe_row_value(row, "reset_expires_at")),
            refresh_token_fingerprint=safe_row_value(row, "refresh_token_fingerprint"),
            last_login_at=as_utc(safe_row_value(row, "last_login_at")),
            created_at=as_utc(safe_row_value(row, "created_at")) or utcnow(),
            updated_at=as_utc(safe_row_value(row, "updated_at")) or utcnow(),
        )

    def _row_to_device_session(self, row: Any) -> DeviceSession:
        raw_ip = safe_row_value(row, "last_ip")
        return DeviceSession(
            principal_id=str(row["principal_id"]),
            device_id=row["device_id"],
            device_name=safe_row_value(row, "device_name"),
            device_platform=safe_row_value(row, "device_platform"),
            app_version=safe_row_value(row, "app_version"),
            last_ip=str(raw_ip) if raw_ip is not None else None,
            last_active_at=as_utc(safe_row_value(row, "last_active_at")) or utcnow(),
        )

    def _row_to_cache_entry(self, row: Any) -> CacheEntry:
        return CacheEntry(
            principal_id=str(row["principal_id"]),
            device_id=row["device_id"],
            entity=row["entity"],
            key=row["key"],
            payload=parse_json_payload(row["payload"]),
            version=int(row["version"]),
            checksum=row["checksum"],
            expires_at=as_utc(safe_row_value(row, "expires_at")),
            created_at=as_utc(safe_row_value(row, "created_at")) or utcnow(),
            updated_at=as_utc(safe_row_value(row, "updated_at")) or utcnow(),
        )

    # principals
    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        status: str = STATUS_PENDING,
        profile: Optional[Profile] = None,
    ) -> Principal:
        principal = Principal(
            id=generate_uuid(),
            email=normalize_email(email),
            password_hash=password_hash,
            role=role,
            status=status,
            profile=profile or Profile(),
        )
        validate_principal_fields(principal)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (id, email, password_hash, role, status, profile, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        principal.email,
                        password_hash,
                        role,
                        status,
                        json.dumps(principal.profile.to_dict()),
                        principal.created_at,
                        principal.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            self.logger.warning("principal_email_conflict")
            raise DuplicateEmail() from exc
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def _update_principal(self, principal_id: str, **updates: Any) -> Optional[Principal]:
        unknown = set(updates) - _PRINCIPAL_COLUMNS
        if unknown:
            raise ValueError(f"unsupported principal columns: {sorted(unknown)}")
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE principal SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*updates.values(), principal_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def set_principal_status(self, principal_id: str, status: str) -> Optional[Principal]:
        probe = Principal(id=principal_id, email="", password_hash="", status=status)
        validate_principal_fields(probe)
        return self._update_principal(principal_id, status=status)

    def set_principal_role(self, principal_id: str, role: str) -> Optional[Principal]:
        probe = Principal(id=principal_id, email="", password_hash="", role=role)
        validate_principal_fields(probe)
        return self._update_principal(principal_id, role=role)

    def set_otp(
        self, principal_id: str, code: str, expires_at: datetime
    ) -> Optional[Principal]:
        return self._update_principal(
            principal_id, otp_code=code, otp_expires_at=expires_at, status=STATUS_PENDING
        )

    def mark_otp_verified(
        self, principal_id: str, verified_at: datetime
    ) -> Optional[Principal]:
        return self._update_principal(
            principal_id,
            otp_code=None,
            otp_expires_at=None,
            otp_verified_at=verified_at,
            status=STATUS_ACTIVE,
        )

    def set_reset_code(
        self, principal_id: str, code: Optional[str], expires_at: Optional[datetime]
    ) -> Optional[Principal]:
        return self._update_principal(
            principal_id, reset_code=code, reset_expires_at=expires_at
        )

    def save_password(
        self, principal_id: str, password_hash: str, *, revoke_refresh: bool = False
    ) -> Optional[Principal]:
        updates: dict[str, Any] = {
            "password_hash": password_hash,
            "reset_code": None,
            "reset_expires_at": None,
        }
        if revoke_refresh:
            updates["refresh_token_fingerprint"] = None
        return self._update_principal(principal_id, **updates)

    def set_refresh_fingerprint(
        self, principal_id: str, fingerprint: Optional[str]
    ) -> Optional[Principal]:
        return self._update_principal(principal_id, refresh_token_fingerprint=fingerprint)

    def swap_refresh_fingerprint(
        self, principal_id: str, expected: str, fingerprint: str
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE principal
                SET refresh_token_fingerprint = %s, updated_at = now()
                WHERE id = %s AND refresh_token_fingerprint = %s
                """,
                (fingerprint, principal_id, expected),
            )
            return result.rowcount == 1

    def touch_last_login(self, principal_id: str, at: datetime) -> Optional[Principal]:
        return self._update_principal(principal_id, last_login_at=at)

    # device sessions
    def upsert_device_session(self, session: DeviceSession) -> DeviceSession:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO device_session (principal_id, device_id, device_name, device_platform, app_version, last_ip, last_active_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (principal_id, device_id) DO UPDATE
                    SET device_name = EXCLUDED.device_name,
                        device_platform = EXCLUDED.device_platform,
                        app_version = EXCLUDED.app_version,
                        last_ip = EXCLUDED.last_ip,
                        last_active_at = EXCLUDED.last_active_at
                    RETURNING *
                    """,
                    (
                        session.principal_id,
                        session.device_id,
                        session.device_name,
                        session.device_platform,
                        session.app_version,
                        session.last_ip,
                        session.last_active_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            self.logger.warning("device_session_orphaned", principal_id=session.principal_id)
            raise UnknownPrincipal(session.principal_id) from exc
        return self._row_to_device_session(row) if row else session

    def get_device_session(
        self, principal_id: str, device_id: str
    ) -> Optional[DeviceSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM device_session WHERE principal_id = %s AND device_id = %s",
                (principal_id, device_id),
            ).fetchone()
        return self._row_to_device_session(row) if row else None

    def list_device_sessions(self, principal_id: str) -> List[DeviceSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM device_session WHERE principal_id = %s ORDER BY last_active_at DESC",
                (principal_id,),
            ).fetchall()
        return [self._row_to_device_session(row) for row in rows]

    # offline cache
    def get_cache_entry(
        self, principal_id: str, device_id: str, entity: str, key: str
    ) -> Optional[CacheEntry]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM offline_cache
                WHERE principal_id = %s AND device_id = %s AND entity = %s AND key = %s
                """,
                (principal_id, device_id, entity, key),
            ).fetchone()
        return self._row_to_cache_entry(row) if row else None

    def list_cache_entries(
        self, principal_id: str, device_id: str, entity: Optional[str] = None
    ) -> List[CacheEntry]:
        query = "SELECT * FROM offline_cache WHERE principal_id = %s AND device_id = %s"
        params: list[Any] = [principal_id, device_id]
        if entity is not None:
            query += " AND entity = %s"
            params.append(entity)
        query += " ORDER BY updated_at DESC, version DESC"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_cache_entry(row) for row in rows]

    def replace_cache_entry(
        self, entry: CacheEntry, expected_version: Optional[int]
    ) -> bool:
        """Conditionally write ``entry``; ``expected_version=None`` requires absence."""

        payload = json.dumps(entry.payload, default=str)
        with self._connect() as conn:
            if expected_version is None:
                result = conn.execute(
                    """
                    INSERT INTO offline_cache (principal_id, device_id, entity, key, payload, version, checksum, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (principal_id, device_id, entity, key) DO NOTHING
                    """,
                    (
                        entry.principal_id,
                        entry.device_id,
                        entry.entity,
                        entry.key,
                        payload,
                        entry.version,
                        entry.checksum,
                        entry.expires_at,
                        entry.created_at,
                        entry.updated_at,
                    ),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE offline_cache
                    SET payload = %s, version = %s, checksum = %s, expires_at = %s, updated_at = %s
                    WHERE principal_id = %s AND device_id = %s AND entity = %s AND key = %s
                      AND version = %s
                    """,
                    (
                        payload,
                        entry.version,
                        entry.checksum,
                        entry.expires_at,
                        entry.updated_at,
                        entry.principal_id,
                        entry.device_id,
                        entry.entity,
                        entry.key,
                        expected_version,
                    ),
                )
            return result.rowcount == 1

    def delete_cache_entry(
        self, principal_id: str, device_id: str, entity: str, key: str
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM offline_cache
                WHERE principal_id = %s AND device_id = %s AND entity = %s AND key = %s
                """,
                (principal_id, device_id, entity, key),
            )
            return result.rowcount > 0
