"""SQLite implementation of the template store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..contracts import Template
from ..errors import ServerError
from ..payload import TemplateDeserializer, TemplateSerializer
from .base import TemplateStore, assign_persisted_ids, reset_step_ids, template_matches


class SQLiteTemplateStore(TemplateStore):
    """Persist workflow templates using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS templates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                category TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_ids (
                id INTEGER PRIMARY KEY AUTOINCREMENT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _allocate_step_id(self) -> int:
        cur = self._conn.cursor()
        cur.execute("INSERT INTO step_ids DEFAULT VALUES")
        return cur.lastrowid

    def _write(self, template_id: Optional[int], payload: Dict[str, Any]) -> int:
        cur = self._conn.cursor()
        if template_id is None:
            cur.execute(
                "INSERT INTO templates (name, workflow_type, category, is_active, body) VALUES (?, ?, ?, ?, ?)",
                (payload["name"], payload["workflow_type"], payload.get("category"), 1, "{}"),
            )
            template_id = cur.lastrowid
        payload = assign_persisted_ids({**payload, "id": template_id}, self._allocate_step_id)
        cur.execute(
            """
            UPDATE templates
            SET name = ?, workflow_type = ?, category = ?, is_active = ?, body = ?
            WHERE id = ?
            """,
            (
                payload["name"],
                payload["workflow_type"],
                payload.get("category"),
                int(payload.get("is_active", 1)),
                json.dumps(payload),
                template_id,
            ),
        )
        self._conn.commit()
        return template_id

    def _read(self, template_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetchone("SELECT id, is_active, body FROM templates WHERE id = ?", template_id)
        if not row:
            return None
        payload = json.loads(row["body"])
        payload["is_active"] = row["is_active"]
        return payload

    def _archive(self, template_id: int) -> bool:
        cur = self._conn.cursor()
        cur.execute("UPDATE templates SET is_active = 0 WHERE id = ?", (template_id,))
        self._conn.commit()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Store API
    async def list_templates(self, filters: Optional[Dict[str, Any]] = None) -> List[Template]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT id, is_active, body FROM templates ORDER BY id"
        )
        templates = []
        for row in rows:
            payload = json.loads(row["body"])
            payload["is_active"] = row["is_active"]
            template = TemplateDeserializer.template(payload)
            if template_matches(template, filters):
                templates.append(template)
        return templates

    async def get_template(self, template_id: int) -> Optional[Template]:
        payload = await asyncio.to_thread(self._read, template_id)
        return TemplateDeserializer.template(payload) if payload else None

    async def create_template(self, template: Template) -> Template:
        template_id = await asyncio.to_thread(
            self._write, None, TemplateSerializer.template(template)
        )
        return await self.get_template(template_id)

    async def update_template(self, template_id: int, template: Template) -> Template:
        if await asyncio.to_thread(self._read, template_id) is None:
            raise ServerError(404, f"Template {template_id} not found")
        await asyncio.to_thread(
            self._write, template_id, TemplateSerializer.template(template)
        )
        return await self.get_template(template_id)

    async def delete_template(self, template_id: int) -> None:
        if not await asyncio.to_thread(self._archive, template_id):
            raise ServerError(404, f"Template {template_id} not found")

    async def duplicate_template(
        self, template_id: int, new_name: Optional[str] = None
    ) -> Template:
        source = await asyncio.to_thread(self._read, template_id)
        if source is None:
            raise ServerError(404, f"Template {template_id} not found")
        payload = reset_step_ids(source)
        payload.pop("id", None)
        payload["name"] = new_name or f"{source['name']} (Copy)"
        payload["is_active"] = 1
        copy_id = await asyncio.to_thread(self._write, None, payload)
        return await self.get_template(copy_id)

    async def close(self) -> None:
        self._conn.close()
