from __future__ import annotations

from pathlib import Path

import httpx


class ApiError(RuntimeError):
    def __init__(self, method: str, path: str, status_code: int, body: str) -> None:
        super().__init__(f"{method} {path} {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class ApiClient:
    """Talks to the jobs API on behalf of the worker."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        self._owns_http = http is None
        self._http = http or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _check(self, response: httpx.Response) -> httpx.Response:
        if response.is_error:
            response.read()
            raise ApiError(response.request.method, response.request.url.path, response.status_code, response.text)
        return response

    def get_job(self, job_id: str) -> dict:
        return self._check(self._http.get(f"/jobs/{job_id}")).json()

    def patch_job(self, job_id: str, **fields) -> dict:
        # Only the keys given are sent; the API leaves absent fields unchanged.
        body = {k: v for k, v in fields.items() if v is not None}
        return self._check(self._http.patch(f"/jobs/{job_id}", json=body)).json()

    def download_inputs(self, job_id: str, dest: Path) -> Path:
        with self._http.stream("GET", f"/jobs/{job_id}/input.zip") as response:
            self._check(response)
            with dest.open("wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
        return dest

    def upload_output(self, job_id: str, path: Path) -> dict:
        with path.open("rb") as fh:
            response = self._http.post(f"/jobs/{job_id}/output", files={"file": (path.name, fh)})
        return self._check(response).json()
