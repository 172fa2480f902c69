import logging
from typing import Any, Optional

import httpx

from recordstore.auth import TokenProvider
from recordstore.errors import RecordNotFoundError, RecordStoreError

logger = logging.getLogger(__name__)


def _error_from_response(resp: httpx.Response) -> RecordStoreError:
    message = resp.text or resp.reason_phrase
    error_code = None
    try:
        body = resp.json()
    except ValueError:
        body = None

    # Errors come back as a list of {"message", "errorCode"} objects
    if isinstance(body, list) and body and isinstance(body[0], dict):
        message = body[0].get("message", message)
        error_code = body[0].get("errorCode")
    elif isinstance(body, dict):
        message = body.get("message") or body.get("error_description") or message
        error_code = body.get("errorCode") or body.get("error")

    cls = RecordNotFoundError if resp.status_code == 404 else RecordStoreError
    return cls(message, status_code=resp.status_code, error_code=error_code)


class RecordStoreClient:
    """
    Typed wrapper over the record store REST API.

    Every call carries a bearer token from the TokenProvider. A 401 response
    refreshes the token and replays the request once; anything else is
    surfaced as RecordStoreError. Network-level retries are left to callers.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        api_version: str = "v59.0",
        timeout: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.token_provider = token_provider
        self.api_version = api_version
        self.client = http or httpx.AsyncClient(timeout=timeout)

    @property
    def data_path(self) -> str:
        return f"/services/data/{self.api_version}"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = await self.token_provider.get_token()

        for attempt in range(2):
            url = path if path.startswith("http") else f"{token.instance_url}{path}"
            headers = {"Authorization": f"Bearer {token.access_token}"}
            try:
                resp = await self.client.request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise RecordStoreError(f"{method} {path} failed: {e}") from e

            if resp.status_code == 401:
                if attempt == 0:
                    logger.info("Record store rejected access token, refreshing")
                    token = await self.token_provider.get_token(stale=token)
                    continue
                # The fresh token was refused too; make the next call log in again
                self.token_provider.invalidate(token)

            if resp.status_code >= 400:
                raise _error_from_response(resp)
            return resp

        raise _error_from_response(resp)

    async def query(self, soql: str) -> list[dict[str, Any]]:
        resp = await self._request("GET", f"{self.data_path}/query", params={"q": soql})
        page = resp.json()
        records = list(page.get("records", []))

        while not page.get("done", True) and page.get("nextRecordsUrl"):
            resp = await self._request("GET", page["nextRecordsUrl"])
            page = resp.json()
            records.extend(page.get("records", []))

        return records

    async def count(self, soql: str) -> int:
        resp = await self._request("GET", f"{self.data_path}/query", params={"q": soql})
        return int(resp.json().get("totalSize", 0))

    async def get(self, sobject: str, record_id: str, fields: Optional[list[str]] = None) -> Optional[dict[str, Any]]:
        params = {"fields": ",".join(fields)} if fields else None
        try:
            resp = await self._request("GET", f"{self.data_path}/sobjects/{sobject}/{record_id}", params=params)
        except RecordNotFoundError:
            return None
        return resp.json()

    async def insert(self, sobject: str, fields: dict[str, Any]) -> str:
        resp = await self._request("POST", f"{self.data_path}/sobjects/{sobject}", json=fields)
        body = resp.json()
        if not body.get("success", True) or "id" not in body:
            raise RecordStoreError(f"Insert into {sobject} failed: {body.get('errors')}", status_code=resp.status_code)
        return body["id"]

    async def update(self, sobject: str, record_id: str, fields: dict[str, Any]) -> bool:
        try:
            await self._request("PATCH", f"{self.data_path}/sobjects/{sobject}/{record_id}", json=fields)
        except RecordNotFoundError:
            return False
        return True

    async def delete(self, sobject: str, record_id: str) -> bool:
        try:
            await self._request("DELETE", f"{self.data_path}/sobjects/{sobject}/{record_id}")
        except RecordNotFoundError:
            return False
        return True

    async def close(self):
        await self.client.aclose()
        await self.token_provider.close()
