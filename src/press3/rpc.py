from __future__ import annotations

"""Read-only HTTP access to the ledger full node and the blob aggregator.

Writes (signed transactions) go through an SDK-backed LedgerClient supplied by
the caller; this module only covers the reads the orchestrator needs.
"""

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Tuple

from press3.errors import ExternalUnavailable
from press3.schemas import snapshot_from_object_response
from press3.structured_logging import log_event
from press3.types import RegistrySnapshot

log = logging.getLogger("press3.rpc")

Json = Dict[str, Any]


def _http_call(req: urllib.request.Request, *, timeout_s: float) -> Tuple[bool, bytes, int]:
    """Returns (ok, body, status_code). Never raises."""
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            status = int(getattr(resp, "status", 200))
            body = resp.read()
            return (200 <= status < 300), body, status
    except urllib.error.HTTPError as e:
        body = b""
        try:
            body = e.read()
        except Exception:
            body = str(e).encode("utf-8")
        return False, body or str(e).encode("utf-8"), int(getattr(e, "code", 0) or 0)
    except Exception as e:
        return False, str(e).encode("utf-8"), 0


class JsonRpcLedgerReader:
    """LedgerReader over the node's JSON-RPC endpoint.

    There is no `submit_transaction`; pair this with a signing client to
    obtain a full LedgerClient.
    """

    def __init__(self, rpc_url: str, *, timeout_s: float = 10.0) -> None:
        self.rpc_url = str(rpc_url).rstrip("/")
        self.timeout_s = float(timeout_s)
        self._next_id = 0

    def _rpc(self, method: str, params: list) -> Json:
        self._next_id += 1
        payload = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}
        req = urllib.request.Request(
            url=self.rpc_url,
            method="POST",
            data=json.dumps(payload).encode("utf-8"),
        )
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")

        ok, body, status = _http_call(req, timeout_s=self.timeout_s)
        if not ok:
            msg = body.decode("utf-8", errors="replace").strip() or f"http_status:{status}"
            log_event(log, "rpc_failed", method=method, status=status, error=msg[:300])
            raise ExternalUnavailable(reason="rpc_http_error", details=msg[:500])

        try:
            doc = json.loads(body.decode("utf-8"))
        except Exception as e:
            raise ExternalUnavailable(reason="rpc_bad_json", details=str(e)[:300]) from e
        if not isinstance(doc, dict):
            raise ExternalUnavailable(reason="rpc_bad_json", details=type(doc).__name__)
        if doc.get("error") is not None:
            raise ExternalUnavailable(reason="rpc_error", details=doc.get("error"))
        result = doc.get("result")
        if not isinstance(result, dict):
            raise ExternalUnavailable(reason="rpc_missing_result", details=method)
        return result

    def get_object(self, object_id: str) -> Json:
        return self._rpc("sui_getObject", [str(object_id), {"showContent": True}])

    def read_object(self, object_id: str) -> RegistrySnapshot:
        return snapshot_from_object_response(self.get_object(object_id))

    def object_exists(self, object_id: str) -> bool:
        """False while the node does not know the object yet.

        Transport failures still raise ExternalUnavailable.
        """
        result = self._rpc("sui_getObject", [str(object_id), {"showType": True}])
        return isinstance(result.get("data"), dict) and result.get("error") is None


class AggregatorBlobReader:
    """Fetch blob bytes from a public aggregator."""

    def __init__(self, aggregator_url: str, *, timeout_s: float = 30.0) -> None:
        self.aggregator_url = str(aggregator_url).rstrip("/")
        self.timeout_s = float(timeout_s)

    def blob_url(self, content_ref: str) -> str:
        return f"{self.aggregator_url}/v1/blobs/{urllib.parse.quote(str(content_ref), safe='')}"

    def read_blob(self, content_ref: str) -> bytes:
        req = urllib.request.Request(url=self.blob_url(content_ref), method="GET")
        ok, body, status = _http_call(req, timeout_s=self.timeout_s)
        if not ok:
            if status == 404:
                raise ExternalUnavailable(reason="blob_not_found", details=content_ref, retryable=False)
            msg = body.decode("utf-8", errors="replace").strip() or f"http_status:{status}"
            raise ExternalUnavailable(reason="aggregator_http_error", details=msg[:500])
        return body
