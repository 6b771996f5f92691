# grimoire/client.py
"""
Cliente HTTP del servicio de auth.

Guarda el par de tokens actual y agrupa las llamadas concurrentes a
``refresh()`` en una sola petición en vuelo: un refresh token es de un solo
uso, así que dos refrescos paralelos con el mismo token harían que uno de los
dos recibiera 401.
"""
from __future__ import annotations

import asyncio

import httpx


class AuthClientError(Exception):
    def __init__(self, status_code: int, body):
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body}")


class AuthClient:
    def __init__(self, http: httpx.AsyncClient, prefix: str = "/api/auth"):
        self.http = http
        self.prefix = prefix
        self.access_token: str | None = None
        self.refresh_token: str | None = None
        self._inflight: asyncio.Task | None = None

    def _set_tokens(self, data: dict) -> None:
        self.access_token = data["accessToken"]
        self.refresh_token = data["refreshToken"]

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None

    @staticmethod
    def _check(resp: httpx.Response) -> httpx.Response:
        if resp.is_error:
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            raise AuthClientError(resp.status_code, body)
        return resp

    async def register(self, email: str, password: str) -> dict:
        resp = self._check(await self.http.post(f"{self.prefix}/register", json={"email": email, "password": password}))
        data = resp.json()
        self._set_tokens(data)
        return data

    async def login(self, email: str, password: str) -> dict:
        resp = self._check(await self.http.post(f"{self.prefix}/login", json={"email": email, "password": password}))
        data = resp.json()
        self._set_tokens(data)
        return data

    async def refresh(self) -> dict:
        # single-flight: quien llegue mientras hay un refresh en curso espera ese mismo
        if self._inflight is None:
            self._inflight = asyncio.create_task(self._do_refresh())
            self._inflight.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _do_refresh(self) -> dict:
        if not self.refresh_token:
            raise AuthClientError(401, {"error": "Missing refresh token"})
        resp = await self.http.post(f"{self.prefix}/refresh", json={"refreshToken": self.refresh_token})
        if resp.status_code == 401:
            self.clear()
        data = self._check(resp).json()
        self._set_tokens(data)
        return data

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Petición autenticada; ante un 401 refresca una vez y reintenta."""
        resp = await self._send(method, url, **kwargs)
        if resp.status_code != 401 or not self.refresh_token:
            return resp
        await self.refresh()
        return await self._send(method, url, **kwargs)

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return await self.http.request(method, url, headers=headers, **kwargs)

    async def me(self) -> dict:
        resp = self._check(await self.request("GET", f"{self.prefix}/me"))
        return resp.json()["user"]

    async def logout(self) -> None:
        token = self.refresh_token
        self.clear()
        if token:
            try:
                await self.http.post(f"{self.prefix}/logout", json={"refreshToken": token})
            except httpx.HTTPError:
                # el logout local ya está hecho; un fallo de red no lo deshace
                pass
