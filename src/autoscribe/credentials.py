from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import RotationConfig
from .events import (
    CREDENTIAL_RATE_LIMITED,
    CREDENTIAL_REACTIVATED,
    CREDENTIAL_SUSPENDED,
    EventRecorder,
)
from .errors import ConfigError, StorageError
from .models import Credential, CredentialStatus, RotationStrategy
from .security.secrets import (
    SecretBox,
    credential_aad,
    decrypt_secret,
    encrypt_secret,
    load_secret_box,
)
from .utils import log_event, parse_datetime, to_iso, utc_now

MINUTE = timedelta(minutes=1)
DAY = timedelta(days=1)

CREDENTIAL_COLUMNS = """
    id, provider, label, key_id, key_blob, per_minute_limit, per_day_limit,
    current_minute_count, current_day_count, minute_window_reset_at, day_window_reset_at,
    status, rate_limited_until, consecutive_failure_count, last_used_at, priority, created_at
"""


@dataclass
class _Row:
    credential: Credential
    key_blob: str
    rate_limited_until: str | None
    dirty: bool = False


def _advance(reset_at: datetime, now: datetime, period: timedelta) -> datetime:
    if now < reset_at:
        return reset_at
    periods = int((now - reset_at) // period) + 1
    return reset_at + periods * period


class CredentialPool:
    """Provider credentials with per-minute/per-day quota windows.

    ``acquire`` selects and charges a credential in one transaction: windows
    are reset lazily, the availability predicate is applied, the rotation
    strategy picks a candidate and its counters are incremented with a
    conditional update. Limits of zero or less mean unlimited.
    """

    def __init__(
        self,
        conn: Any,
        config: RotationConfig,
        events: EventRecorder | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.logger = logger or logging.getLogger("autoscribe.credentials")
        self.events = events or EventRecorder(None, self.logger, clock)
        self.clock = clock
        self.rng = rng or random.Random()

    def _for_update(self) -> str:
        if getattr(self.conn, "backend", "sqlite") == "postgres":
            return " FOR UPDATE"
        return ""

    def add_credential(
        self,
        provider: str,
        key_material: str,
        *,
        label: str | None = None,
        per_minute_limit: int = 0,
        per_day_limit: int = 0,
        priority: int = 100,
        credential_id: str | None = None,
    ) -> Credential:
        credential_id = credential_id or f"cred_{uuid.uuid4().hex[:16]}"
        now = self.clock()
        key_id, blob = encrypt_secret(key_material, credential_aad(provider, credential_id))
        with self.conn.transaction():
            self.conn.execute(
                """
                INSERT INTO credentials
                    (id, provider, label, key_id, key_blob, per_minute_limit, per_day_limit,
                     current_minute_count, current_day_count, minute_window_reset_at,
                     day_window_reset_at, status, consecutive_failure_count, priority,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?, 'active', 0, ?, ?, ?)
                """,
                (
                    credential_id,
                    provider,
                    label,
                    key_id,
                    blob,
                    per_minute_limit,
                    per_day_limit,
                    to_iso(now + MINUTE),
                    to_iso(now + DAY),
                    priority,
                    to_iso(now),
                    to_iso(now),
                ),
            )
        log_event(
            self.logger,
            logging.INFO,
            "credential_added",
            credential_id=credential_id,
            provider=provider,
            label=label,
        )
        credential = self.get(credential_id)
        if credential is None:
            raise StorageError(f"credential {credential_id} was not stored")
        return credential

    def acquire(
        self, provider: str, strategy: RotationStrategy | str | None = None
    ) -> Credential | None:
        """Return a charged credential for ``provider`` or None when none is available.

        A candidate whose stored key cannot be decrypted is suspended and the
        next candidate is tried; it is never charged.
        """
        if not isinstance(strategy, RotationStrategy):
            strategy = RotationStrategy.parse(strategy or self.config.default_strategy)
        now = self.clock()
        now_iso = to_iso(now)
        chosen: _Row | None = None
        key_material = ""
        box: SecretBox | None = None
        unreadable: list[tuple[_Row, str]] = []
        with self.conn.transaction():
            rows = self._load_rows(provider, lock=True)
            for row in rows:
                self._refresh(row, now)
                if row.dirty:
                    self._store_windows(row, now_iso)
            available = [row for row in rows if row.credential.is_available()]
            while available and chosen is None:
                candidate = self._select(provider, rows, available, strategy)
                base = candidate.credential
                if box is None:
                    box = load_secret_box()
                try:
                    key_material = decrypt_secret(
                        candidate.key_blob, credential_aad(base.provider, base.credential_id), box
                    )
                except ConfigError as exc:
                    self._suspend(base.credential_id, now_iso)
                    unreadable.append((candidate, str(exc)))
                    available.remove(candidate)
                    continue
                cursor = self.conn.execute(
                    """
                    UPDATE credentials
                    SET current_minute_count = current_minute_count + 1,
                        current_day_count = current_day_count + 1,
                        last_used_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'active'
                      AND (per_minute_limit <= 0 OR current_minute_count < per_minute_limit)
                      AND (per_day_limit <= 0 OR current_day_count < per_day_limit)
                    """,
                    (now_iso, now_iso, base.credential_id),
                )
                if cursor.rowcount == 1:
                    chosen = candidate
                else:
                    available.remove(candidate)
            if chosen is not None and strategy == RotationStrategy.ROUND_ROBIN:
                self._store_cursor(provider, rows.index(chosen), now_iso)
        for row, error in unreadable:
            log_event(
                self.logger,
                logging.ERROR,
                "credential_unreadable",
                credential_id=row.credential.credential_id,
                provider=provider,
                error=error,
            )
            self.events.emit(
                CREDENTIAL_SUSPENDED,
                subject_id=row.credential.credential_id,
                provider=provider,
                reason="unreadable_key",
            )
        if chosen is None:
            log_event(
                self.logger,
                logging.INFO,
                "credential_unavailable",
                provider=provider,
                strategy=strategy.value,
                total=len(rows),
            )
            return None
        base = chosen.credential
        log_event(
            self.logger,
            logging.DEBUG,
            "credential_acquired",
            credential_id=base.credential_id,
            provider=provider,
            strategy=strategy.value,
        )
        return replace(
            base,
            key_material=key_material,
            current_minute_count=base.current_minute_count + 1,
            current_day_count=base.current_day_count + 1,
            last_used_at=now_iso,
        )

    def record_success(self, credential_id: str) -> None:
        """Reset the failure streak after a successful call.

        Quota counters are not touched here: the unit was already charged by
        ``acquire``, so a concurrent acquisition can never spend it twice.
        """
        now_iso = to_iso(self.clock())
        with self.conn.transaction():
            self.conn.execute(
                """
                UPDATE credentials
                SET consecutive_failure_count = 0, last_used_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (now_iso, now_iso, credential_id),
            )

    def record_failure(self, credential_id: str, is_rate_limit: bool) -> CredentialStatus | None:
        now = self.clock()
        now_iso = to_iso(now)
        event: str | None = None
        with self.conn.transaction():
            rows = self._load_rows(None, lock=True, credential_id=credential_id)
            if not rows:
                return None
            row = rows[0]
            self._refresh(row, now)
            if row.dirty:
                self._store_windows(row, now_iso)
            credential = row.credential
            if is_rate_limit:
                # Rate limited until the current minute window rolls over.
                until = parse_datetime(credential.minute_window_reset_at)
                if until is None or until <= now:
                    until = now + MINUTE
                status = (
                    CredentialStatus.SUSPENDED
                    if credential.status == CredentialStatus.SUSPENDED
                    else CredentialStatus.RATE_LIMITED
                )
                self.conn.execute(
                    """
                    UPDATE credentials
                    SET status = ?, rate_limited_until = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (status.value, to_iso(until), now_iso, credential_id),
                )
                if status == CredentialStatus.RATE_LIMITED:
                    event = CREDENTIAL_RATE_LIMITED
                failures = credential.consecutive_failure_count
            else:
                failures = credential.consecutive_failure_count + 1
                status = credential.status
                if failures >= self.config.suspension_threshold:
                    if status != CredentialStatus.SUSPENDED:
                        event = CREDENTIAL_SUSPENDED
                    status = CredentialStatus.SUSPENDED
                self.conn.execute(
                    """
                    UPDATE credentials
                    SET consecutive_failure_count = ?, status = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (failures, status.value, now_iso, credential_id),
                )
        if event:
            self.events.emit(
                event,
                subject_id=credential_id,
                provider=credential.provider,
                failures=failures,
            )
        return status

    def reactivate(self, credential_id: str) -> bool:
        now_iso = to_iso(self.clock())
        with self.conn.transaction():
            row = self.conn.execute(
                "SELECT provider FROM credentials WHERE id = ? AND status != 'active'",
                (credential_id,),
            ).fetchone()
            if not row:
                return False
            self.conn.execute(
                """
                UPDATE credentials
                SET status = 'active', consecutive_failure_count = 0,
                    rate_limited_until = NULL, updated_at = ?
                WHERE id = ?
                """,
                (now_iso, credential_id),
            )
        self.events.emit(CREDENTIAL_REACTIVATED, subject_id=credential_id, provider=row[0])
        return True

    def get(self, credential_id: str) -> Credential | None:
        rows = self._load_rows(None, lock=False, credential_id=credential_id)
        return rows[0].credential if rows else None

    def list_credentials(self, provider: str | None = None) -> list[Credential]:
        """Credentials as stored; key material is never included."""
        return [row.credential for row in self._load_rows(provider, lock=False)]

    def available_count(self, provider: str) -> int:
        now = self.clock()
        count = 0
        for row in self._load_rows(provider, lock=False):
            self._refresh(row, now)
            if row.credential.is_available():
                count += 1
        return count

    def providers(self) -> list[str]:
        cursor = self.conn.execute("SELECT DISTINCT provider FROM credentials ORDER BY provider")
        return [row[0] for row in cursor.fetchall()]

    def exhausted_providers(self, providers: list[str] | None = None) -> list[str]:
        """Providers whose every credential is currently unavailable."""
        names = providers if providers is not None else self.providers()
        return [name for name in names if self.available_count(name) == 0]

    def _select(
        self,
        provider: str,
        rows: list[_Row],
        available: list[_Row],
        strategy: RotationStrategy,
    ) -> _Row:
        if strategy == RotationStrategy.RANDOM:
            return self.rng.choice(available)
        if strategy == RotationStrategy.LEAST_USED:
            return min(available, key=_least_used_key)
        if strategy == RotationStrategy.PRIORITY:
            return min(available, key=lambda row: (row.credential.priority, *_least_used_key(row)))
        cursor = self._load_cursor(provider)
        total = len(rows)
        for offset in range(1, total + 1):
            candidate = rows[(cursor + offset) % total]
            if candidate in available:
                return candidate
        return available[0]

    def _suspend(self, credential_id: str, now_iso: str | None) -> None:
        self.conn.execute(
            "UPDATE credentials SET status = 'suspended', updated_at = ? WHERE id = ?",
            (now_iso, credential_id),
        )

    def _load_cursor(self, provider: str) -> int:
        row = self.conn.execute(
            "SELECT cursor FROM rotation_state WHERE provider = ?", (provider,)
        ).fetchone()
        return int(row[0]) if row else -1

    def _store_cursor(self, provider: str, position: int, now_iso: str | None) -> None:
        self.conn.execute(
            """
            INSERT INTO rotation_state (provider, cursor, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(provider) DO UPDATE SET cursor = excluded.cursor,
                updated_at = excluded.updated_at
            """,
            (provider, position, now_iso),
        )

    def _load_rows(
        self,
        provider: str | None,
        *,
        lock: bool,
        credential_id: str | None = None,
    ) -> list[_Row]:
        clauses: list[str] = []
        params: list[object] = []
        if provider is not None:
            clauses.append("provider = ?")
            params.append(provider)
        if credential_id is not None:
            clauses.append("id = ?")
            params.append(credential_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        suffix = self._for_update() if lock else ""
        cursor = self.conn.execute(
            f"""
            SELECT {CREDENTIAL_COLUMNS} FROM credentials
            {where}
            ORDER BY provider, created_at, id{suffix}
            """,
            tuple(params),
        )
        return [_row_from_db(row) for row in cursor.fetchall()]

    def _refresh(self, row: _Row, now: datetime) -> None:
        credential = row.credential
        changes: dict[str, Any] = {}
        minute_reset = parse_datetime(credential.minute_window_reset_at) or now
        if now >= minute_reset:
            changes["current_minute_count"] = 0
            changes["minute_window_reset_at"] = to_iso(_advance(minute_reset, now, MINUTE))
        day_reset = parse_datetime(credential.day_window_reset_at) or now
        if now >= day_reset:
            changes["current_day_count"] = 0
            changes["day_window_reset_at"] = to_iso(_advance(day_reset, now, DAY))
        if credential.status == CredentialStatus.RATE_LIMITED:
            until = parse_datetime(row.rate_limited_until)
            if until is None or now >= until:
                changes["status"] = CredentialStatus.ACTIVE
                row.rate_limited_until = None
        if changes:
            row.credential = replace(credential, **changes)
            row.dirty = True

    def _store_windows(self, row: _Row, now_iso: str | None) -> None:
        credential = row.credential
        self.conn.execute(
            """
            UPDATE credentials
            SET current_minute_count = ?, minute_window_reset_at = ?,
                current_day_count = ?, day_window_reset_at = ?,
                status = ?, rate_limited_until = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                credential.current_minute_count,
                credential.minute_window_reset_at,
                credential.current_day_count,
                credential.day_window_reset_at,
                credential.status.value,
                row.rate_limited_until,
                now_iso,
                credential.credential_id,
            ),
        )
        row.dirty = False


def _least_used_key(row: _Row) -> tuple[int, str]:
    # Never-used credentials sort before any timestamp.
    return (row.credential.current_day_count, row.credential.last_used_at or "")


def _row_from_db(row: Any) -> _Row:
    credential = Credential(
        credential_id=row[0],
        provider=row[1],
        key_material="",
        label=row[2],
        per_minute_limit=int(row[5]),
        per_day_limit=int(row[6]),
        current_minute_count=int(row[7]),
        current_day_count=int(row[8]),
        minute_window_reset_at=row[9],
        day_window_reset_at=row[10],
        status=CredentialStatus(row[11]),
        consecutive_failure_count=int(row[13]),
        last_used_at=row[14],
        priority=int(row[15]),
    )
    return _Row(credential=credential, key_blob=row[4], rate_limited_until=row[12])
