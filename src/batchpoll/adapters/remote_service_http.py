"""RemoteJobServicePort over the batch service's HTTP API.

Endpoints, relative to the configured base URL (`{kind}` is `report` or
`feed`):

* ``POST   {kind}s``                    submit; answers ``{"id": "..."}``
* ``GET    {kind}s/status?ids=a,b``     batched status; answers a list of
  ``{"id", "status", "generatedId"}`` (or ``{"statuses": [...]}``)
* ``GET    {kind}s/{result_id}/result`` raw result bytes; ``Content-MD5``
  carries the digest, ``X-Result-Has-Errors: true`` flags a result the
  remote produced with processing errors.

Every call carries the region and merchant id as query parameters.
"""
import json
from typing import Any, Dict, List, Optional, Sequence

from batchpoll.core.exceptions import RemoteServiceError
from batchpoll.core.interfaces.http_client import HttpClientPort
from batchpoll.core.interfaces.logging import LoggingPort
from batchpoll.core.interfaces.remote_service import RemoteJobServicePort
from batchpoll.core.models.entry import JobKind, Region
from batchpoll.core.models.remote import DownloadedResult, RemoteStatusReport

DIGEST_HEADER = "Content-MD5"
HAS_ERRORS_HEADER = "X-Result-Has-Errors"


class HttpRemoteJobServiceAdapter(RemoteJobServicePort):
    def __init__(
        self,
        http_client: HttpClientPort,
        base_url: str,
        logger: LoggingPort,
        timeout: float | None = None,
    ) -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._log = logger
        self._timeout = timeout

    def _url(self, kind: JobKind, *parts: str) -> str:
        return "/".join([self._base_url, f"{kind}s", *parts])

    @staticmethod
    def _scope(region: Region, merchant_id: str) -> Dict[str, str]:
        return {"region": str(region), "merchant_id": merchant_id}

    async def submit(
        self, kind: JobKind, region: Region, merchant_id: str, payload: str
    ) -> Optional[str]:
        url = self._url(kind)
        body = {**self._scope(region, merchant_id), "parameters": json.loads(payload)}
        response = await self._http.post(url, json=body, timeout=self._timeout)
        answer = response.get("body")
        remote_id = answer.get("id") if isinstance(answer, dict) else None
        if not remote_id:
            self._log.warning(
                "[remote:submit] no id in answer kind=%s status=%s body=%s",
                kind, response.get("status"), str(answer)[:200],
            )
            return None
        self._log.debug("[remote:submit] kind=%s remote_id=%s", kind, remote_id)
        return str(remote_id)

    async def query_status(
        self, kind: JobKind, region: Region, merchant_id: str, remote_ids: Sequence[str]
    ) -> List[RemoteStatusReport]:
        if not remote_ids:
            return []
        params = {**self._scope(region, merchant_id), "ids": ",".join(remote_ids)}
        answer: Any = await self._http.get(
            self._url(kind, "status"), params=params, timeout=self._timeout
        )
        if isinstance(answer, dict):
            answer = answer.get("statuses")
        if not isinstance(answer, list):
            raise RemoteServiceError(
                "Unexpected status answer from the remote service",
                transient=False,
                upstream_body=str(answer)[:2000],
            )
        reports = []
        for row in answer:
            if not isinstance(row, dict) or not row.get("id"):
                self._log.warning("[remote:status] skipping malformed row kind=%s row=%s", kind, row)
                continue
            reports.append(
                RemoteStatusReport(
                    remote_id=str(row["id"]),
                    status=str(row.get("status") or ""),
                    generated_id=row.get("generatedId"),
                )
            )
        return reports

    async def download(
        self, kind: JobKind, region: Region, merchant_id: str, result_id: str
    ) -> DownloadedResult:
        if not result_id:
            raise RemoteServiceError("Cannot download without a result id", transient=False)
        response = await self._http.get_bytes(
            self._url(kind, result_id, "result"),
            params=self._scope(region, merchant_id),
            timeout=self._timeout,
        )
        headers = {k.lower(): v for k, v in (response.get("headers") or {}).items()}
        return DownloadedResult(
            content=response.get("body") or b"",
            digest=headers.get(DIGEST_HEADER.lower()),
            has_errors=headers.get(HAS_ERRORS_HEADER.lower(), "").lower() == "true",
        )
