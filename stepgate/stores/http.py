"""HTTP client for the workflow admin API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import ApiConfig
from ..contracts import (
    AutomationRequest,
    InstanceChecklist,
    Template,
    TransitionRequest,
    WorkflowInstance,
)
from ..errors import ConflictCode, ConflictError, NetworkError, ServerError
from ..payload import TemplateDeserializer, TemplateSerializer
from .base import ExecutionStore, TemplateStore

logger = logging.getLogger(__name__)


class ApiClient:
    """Thin JSON-over-HTTP wrapper with bearer-token auth and error classification."""

    def __init__(
        self,
        config: Optional[ApiConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or ApiConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def endpoints(self):
        return self.config.endpoints

    async def connect(self) -> None:
        if self._client is not None:
            return
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            timeout=httpx.Timeout(self.config.timeout),
            headers=headers,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if self._client is None:
            await self.connect()
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TransportError as exc:
            logger.error(f"{method} {path} failed: {exc}")
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if response.is_error:
            raise classify_error(response)

        content_type = response.headers.get("content-type", "")
        if not response.content or "application/json" not in content_type:
            return {"success": True}
        return response.json()


def classify_error(response: httpx.Response) -> Exception:
    """Turn a non-success response into a :class:`ConflictError` or :class:`ServerError`."""
    try:
        body = response.json()
    except ValueError:
        return ServerError(
            response.status_code,
            response.text or f"Request failed with status {response.status_code}",
        )
    if not isinstance(body, dict):
        return ServerError(response.status_code, details={"body": body})

    message = body.get("message") or body.get("error") or ""
    code = ConflictCode.parse(body.get("code"))
    if code is None:
        return ServerError(response.status_code, message, details=body)
    return ConflictError(
        code,
        message,
        blockers=TemplateDeserializer.blockers(body.get("blockers")),
        details=body,
    )


def _clean(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
    params = {}
    for key, value in (filters or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "1" if value else "0"
        params[key] = str(getattr(value, "value", value))
    return params


class HttpTemplateStore(TemplateStore):
    """Template store backed by the workflow admin API."""

    def __init__(self, client: ApiClient) -> None:
        self._api = client

    async def connect(self) -> None:
        await self._api.connect()

    async def close(self) -> None:
        await self._api.close()

    async def list_templates(self, filters: Optional[Dict[str, Any]] = None) -> List[Template]:
        filters = dict(filters or {})
        if "workflow_type" in filters:
            filters["type"] = filters.pop("workflow_type")
        data = await self._api.request("GET", self._api.endpoints.templates, params=_clean(filters))
        return [TemplateDeserializer.template(t) for t in data.get("templates") or []]

    async def get_template(self, template_id: int) -> Optional[Template]:
        path = self._api.endpoints.template.format(template_id=template_id)
        try:
            data = await self._api.request("GET", path)
        except ServerError as exc:
            if exc.status_code == 404:
                return None
            raise
        return TemplateDeserializer.template(data)

    async def create_template(self, template: Template) -> Template:
        data = await self._api.request(
            "POST", self._api.endpoints.templates, json=TemplateSerializer.template(template)
        )
        return TemplateDeserializer.template(data)

    async def update_template(self, template_id: int, template: Template) -> Template:
        path = self._api.endpoints.template.format(template_id=template_id)
        data = await self._api.request("PUT", path, json=TemplateSerializer.template(template))
        return TemplateDeserializer.template(data)

    async def delete_template(self, template_id: int) -> None:
        path = self._api.endpoints.archive_template.format(template_id=template_id)
        await self._api.request("POST", path)

    async def duplicate_template(
        self, template_id: int, new_name: Optional[str] = None
    ) -> Template:
        path = self._api.endpoints.duplicate_template.format(template_id=template_id)
        data = await self._api.request("POST", path, json={"new_name": new_name})
        return TemplateDeserializer.template(data)


class HttpExecutionStore(ExecutionStore):
    """Execution store backed by the workflow admin API."""

    def __init__(self, client: ApiClient) -> None:
        self._api = client

    async def connect(self) -> None:
        await self._api.connect()

    async def close(self) -> None:
        await self._api.close()

    async def list_instances(
        self, filters: Optional[Dict[str, Any]] = None
    ) -> List[WorkflowInstance]:
        data = await self._api.request(
            "GET", self._api.endpoints.instances, params=_clean(filters)
        )
        return [WorkflowInstance.model_validate(i) for i in data.get("instances") or []]

    async def get_instance(self, instance_id: int) -> Optional[WorkflowInstance]:
        path = self._api.endpoints.instance.format(instance_id=instance_id)
        try:
            data = await self._api.request("GET", path)
        except ServerError as exc:
            if exc.status_code == 404:
                return None
            raise
        return WorkflowInstance.model_validate(data.get("instance") or data)

    async def create_instance(self, data: Dict[str, Any]) -> WorkflowInstance:
        response = await self._api.request("POST", self._api.endpoints.instances, json=data)
        return WorkflowInstance.model_validate(response.get("instance") or response)

    async def start_workflow(self, instance_id: int) -> Dict[str, Any]:
        path = self._api.endpoints.start_workflow.format(instance_id=instance_id)
        return await self._api.request("POST", path)

    async def get_instance_checklist(self, instance_id: int) -> InstanceChecklist:
        path = self._api.endpoints.instance_steps.format(instance_id=instance_id)
        data = await self._api.request("GET", path)
        return TemplateDeserializer.checklist(data, instance_id)

    async def transition_step(
        self, instance_id: int, step_id: int, request: TransitionRequest
    ) -> Dict[str, Any]:
        path = self._api.endpoints.transition_step.format(
            instance_id=instance_id, step_id=step_id
        )
        return await self._api.request(
            "PATCH", path, json=request.model_dump(mode="json", exclude_none=True)
        )

    async def run_step_automation(
        self, instance_id: int, step_id: int, request: AutomationRequest
    ) -> Dict[str, Any]:
        path = self._api.endpoints.step_automation.format(
            instance_id=instance_id, step_id=step_id
        )
        return await self._api.request("POST", path, json=request.model_dump(mode="json"))

    async def run_external_verification(
        self, instance_id: int, step_id: int, identifiers: Dict[str, Any]
    ) -> Dict[str, Any]:
        path = self._api.endpoints.external_verification.format(
            instance_id=instance_id, step_id=step_id
        )
        return await self._api.request("POST", path, json=identifiers)
