from __future__ import annotations

import json
import logging
import shutil
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .models import AnalysisResult, CachedAnalysis, CachedRecord, PrescriptionRecord, PrescriptionSummary


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LocalCache:
    """
    Local persistent store for scraped prescription records and per-medicine analysis results.

    - `record_details` holds one row per receteNo; a re-fetch replaces the row wholesale.
    - `analysis_results` holds at most one row per (receteNo, barkod).
    - `record_summaries` holds the last record-list row seen per receteNo (dates, coverage).

    There is no expiry: presence means fresh. Callers that want a refresh pass `force=True` upstream.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")
        self._lock = threading.RLock()

        # Self-heal on corrupted DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _connect(self) -> sqlite3.Connection:
        # The fetch path writes from the browser worker thread; all access is serialized by `_lock`.
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the cache DB. If it looks corrupted, move it aside and restore from the last-known-good backup.

        Losing the cache is never fatal: everything in it can be re-scraped or re-scored.
        """
        if self.db_path.exists():
            try:
                conn = self._connect()
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except sqlite3.Error as e:
                logger.warning("Cache DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = self._connect()
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored cache DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except (OSError, sqlite3.Error):
                        logger.warning("Failed to restore cache DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No cache DB backup found; creating a fresh DB.")

        return self._connect()

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except sqlite3.Error:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = _now().strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except OSError:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return
        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("Failed to write cache DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the cache DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        dst = sqlite3.connect(tmp)
        try:
            with self._lock:
                self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS record_details (
                  recete_no TEXT PRIMARY KEY,
                  payload TEXT NOT NULL,
                  cached_at TEXT NOT NULL
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_results (
                  recete_no TEXT NOT NULL,
                  barkod TEXT NOT NULL,
                  payload TEXT NOT NULL,
                  cached_at TEXT NOT NULL,
                  PRIMARY KEY (recete_no, barkod)
                );
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_analysis_results_recete ON analysis_results (recete_no);"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS record_summaries (
                  recete_no TEXT PRIMARY KEY,
                  payload TEXT NOT NULL,
                  cached_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # -- prescription records -------------------------------------------------------------------

    def get_record(self, recete_no: str) -> Optional[CachedRecord]:
        return self.get_records([recete_no]).get(recete_no)

    def get_records(self, recete_nos: Iterable[str]) -> dict[str, CachedRecord]:
        keys = [k for k in dict.fromkeys(recete_nos) if k]
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT recete_no, payload, cached_at FROM record_details WHERE recete_no IN ({placeholders})",
                keys,
            ).fetchall()
        out: dict[str, CachedRecord] = {}
        for recete_no, payload, cached_at in rows:
            out[recete_no] = CachedRecord(
                record=PrescriptionRecord.model_validate_json(payload),
                cached_at=datetime.fromisoformat(cached_at),
            )
        return out

    def put_record(self, record: PrescriptionRecord) -> CachedRecord:
        cached_at = _now()
        payload = json.dumps(record.to_wire(), ensure_ascii=False)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO record_details (recete_no, payload, cached_at)
                VALUES (?, ?, ?)
                ON CONFLICT(recete_no) DO UPDATE SET
                  payload=excluded.payload,
                  cached_at=excluded.cached_at;
                """,
                (record.recete_no, payload, cached_at.isoformat()),
            )
            self._conn.commit()
        return CachedRecord(record=record, cached_at=cached_at)

    # -- record list summaries ------------------------------------------------------------------

    def get_summary(self, recete_no: str) -> Optional[PrescriptionSummary]:
        return self.get_summaries([recete_no]).get(recete_no)

    def get_summaries(self, recete_nos: Iterable[str]) -> dict[str, PrescriptionSummary]:
        keys = [k for k in dict.fromkeys(recete_nos) if k]
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT recete_no, payload FROM record_summaries WHERE recete_no IN ({placeholders})",
                keys,
            ).fetchall()
        return {recete_no: PrescriptionSummary.model_validate_json(payload) for recete_no, payload in rows}

    def put_summaries(self, summaries: Iterable[PrescriptionSummary]) -> int:
        cached_at = _now().isoformat()
        params = [
            (s.recete_no, json.dumps(s.to_wire(), ensure_ascii=False), cached_at) for s in summaries
        ]
        if not params:
            return 0
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO record_summaries (recete_no, payload, cached_at)
                VALUES (?, ?, ?)
                ON CONFLICT(recete_no) DO UPDATE SET
                  payload=excluded.payload,
                  cached_at=excluded.cached_at;
                """,
                params,
            )
            self._conn.commit()
        return len(params)

    # -- analysis results -----------------------------------------------------------------------

    def get_analysis(self, recete_no: str, barkod: str) -> Optional[CachedAnalysis]:
        return self.get_analyses([recete_no]).get(recete_no, {}).get(barkod)

    def get_analyses(self, recete_nos: Iterable[str]) -> dict[str, dict[str, CachedAnalysis]]:
        keys = [k for k in dict.fromkeys(recete_nos) if k]
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT recete_no, barkod, payload, cached_at
                FROM analysis_results
                WHERE recete_no IN ({placeholders})
                """,
                keys,
            ).fetchall()
        out: dict[str, dict[str, CachedAnalysis]] = {}
        for recete_no, barkod, payload, cached_at in rows:
            out.setdefault(recete_no, {})[barkod] = CachedAnalysis(
                recete_no=recete_no,
                barkod=barkod,
                result=AnalysisResult.model_validate_json(payload),
                cached_at=datetime.fromisoformat(cached_at),
            )
        return out

    def put_analysis(self, recete_no: str, barkod: str, result: AnalysisResult) -> CachedAnalysis:
        cached_at = _now()
        payload = result.model_dump_json(by_alias=True)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO analysis_results (recete_no, barkod, payload, cached_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(recete_no, barkod) DO UPDATE SET
                  payload=excluded.payload,
                  cached_at=excluded.cached_at;
                """,
                (recete_no, barkod, payload, cached_at.isoformat()),
            )
            self._conn.commit()
        return CachedAnalysis(recete_no=recete_no, barkod=barkod, result=result, cached_at=cached_at)

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM analysis_results;")
            self._conn.execute("DELETE FROM record_details;")
            self._conn.execute("DELETE FROM record_summaries;")
            self._conn.commit()
        logger.info("Cleared local cache (%s).", self.db_path)
        self._maybe_backup(if_missing=False)

    def counts(self) -> tuple[int, int]:
        with self._lock:
            records = self._conn.execute("SELECT COUNT(*) FROM record_details;").fetchone()[0]
            analyses = self._conn.execute("SELECT COUNT(*) FROM analysis_results;").fetchone()[0]
        return int(records), int(analyses)
