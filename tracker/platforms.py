# tracker/platforms.py
"""
Ride sync with the ride-hailing platforms.

Only Uber exposes a public OAuth API. 99 and InDriver have none, so every
connect/sync request for them raises ``UnavailableError``; drivers enter
those rides by hand.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from tracker import crud, schemas
from tracker.config import settings
from tracker.earnings import Platform, parse_platform
from tracker.errors import ConflictError, UnavailableError, UpstreamError

logger = logging.getLogger(__name__)

PLATFORM_NAMES = {Platform.UBER: "Uber", Platform.NINETY_NINE: "99", Platform.INDRIVER: "InDriver"}

MANUAL_ENTRY_ALTERNATIVES = [
    "Manual ride entry (recommended)",
    "Wait for a public API release",
    "Corporate partnership with the platform",
]


def _unavailable(platform: Platform) -> UnavailableError:
    return UnavailableError(
        f"{PLATFORM_NAMES[platform]} has no public API. Use manual ride entry."
    )


@dataclass
class UberConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: List[str] = field(default_factory=lambda: ["profile", "history", "history_lite"])
    api_url: str = "https://api.uber.com"
    login_url: str = "https://login.uber.com"

    @classmethod
    def from_settings(cls) -> "UberConfig":
        return cls(
            client_id=settings.uber_client_id,
            client_secret=settings.uber_client_secret,
            redirect_uri=settings.uber_redirect_uri,
            scopes=list(settings.uber_scopes),
            api_url=settings.uber_api_url,
            login_url=settings.uber_login_url,
        )


class UberClient:
    """OAuth 2.0 client for the Uber rider API."""

    def __init__(self, config: UberConfig, timeout: Optional[float] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.expires_in: Optional[int] = None
        self._http = httpx.Client(
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
            transport=transport,
        )

    def close(self):
        self._http.close()

    def authorization_url(self) -> str:
        params = urlencode({
            "client_id": self.config.client_id,
            "response_type": "code",
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
        })
        return f"{self.config.login_url}/oauth/v2/authorize?{params}"

    def set_tokens(self, access_token: Optional[str], refresh_token: Optional[str] = None):
        self.access_token = access_token
        self.refresh_token = refresh_token

    def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        form = {"client_id": self.config.client_id, "client_secret": self.config.client_secret, **form}
        try:
            response = self._http.post(f"{self.config.login_url}/oauth/v2/token", data=form)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Uber token request failed: {e}") from e
        if response.is_error:
            raise UpstreamError(f"Uber token request failed: HTTP {response.status_code}")
        data = response.json()
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token") or self.refresh_token
        self.expires_in = data.get("expires_in")
        return data

    def exchange_code(self, code: str) -> Dict[str, Any]:
        return self._token_request({
            "grant_type": "authorization_code",
            "redirect_uri": self.config.redirect_uri,
            "code": code,
        })

    def refresh_access_token(self) -> Dict[str, Any]:
        if not self.refresh_token:
            raise UpstreamError("Uber session expired and no refresh token is stored")
        return self._token_request({"grant_type": "refresh_token", "refresh_token": self.refresh_token})

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.access_token:
            raise UpstreamError("Not connected to Uber")

        refreshed = False
        while True:
            try:
                response = self._http.get(
                    f"{self.config.api_url}{path}",
                    params=params,
                    headers={"Authorization": f"Bearer {self.access_token}"},
                )
            except httpx.HTTPError as e:
                raise UpstreamError(f"Uber request failed: {e}") from e

            if response.status_code == 401 and not refreshed:
                logger.warning("Uber token rejected, refreshing once")
                self.refresh_access_token()
                refreshed = True
                continue
            if response.is_error:
                raise UpstreamError(f"Uber request {path} failed: HTTP {response.status_code}")
            return response.json()

    def fetch_ride_history(self, offset: int = 0, limit: int = 50) -> List[Dict[str, Any]]:
        data = self._get("/v1.2/history", params={"offset": offset, "limit": limit})
        return data.get("history") or []

    def fetch_profile(self) -> Dict[str, Any]:
        return self._get("/v1.2/me")


def _uber_ride_to_create(item: Dict[str, Any]) -> schemas.RideCreate:
    start = item.get("start_time")
    end = item.get("end_time")
    ride_date = datetime.fromtimestamp(start) if start else datetime.now()
    duration = (end - start) / 60 if start and end else 0
    fare = item.get("fare") or {}
    return schemas.RideCreate(
        platform=Platform.UBER.value,
        date=ride_date,
        value=fare.get("amount", 0),
        distance=item.get("distance", 0),
        duration=duration,
        category=item.get("product_id") or "",
        bonus=0,
        multiplier=1,
    )


class PlatformManager:
    """Per-user entry point for connecting and syncing platforms."""

    def __init__(self, db: Session, user_id: int, uber_client: Optional[UberClient] = None):
        self.db = db
        self.user_id = user_id
        self._uber = uber_client

    @property
    def uber(self) -> UberClient:
        if self._uber is None:
            self._uber = UberClient(UberConfig.from_settings())
        token = crud.get_platform_token(self.db, self.user_id, Platform.UBER.value)
        if token and not self._uber.access_token:
            self._uber.set_tokens(token.access_token, token.refresh_token)
        return self._uber

    def is_connected(self, platform: Platform) -> bool:
        return crud.get_platform_token(self.db, self.user_id, platform.value) is not None

    def statuses(self) -> List[schemas.PlatformStatus]:
        tokens = {t.platform: t for t in crud.list_platform_tokens(self.db, self.user_id)}
        out = []
        for p in Platform:
            has_api = p is Platform.UBER
            token = tokens.get(p.value)
            out.append(schemas.PlatformStatus(
                platform=p.value,
                name=PLATFORM_NAMES[p],
                is_available=has_api,
                has_public_api=has_api,
                requires_partnership=True,
                is_connected=token is not None,
                last_sync=token.updated_at if token else None,
            ))
        return out

    def connection_info(self, platform: Any) -> schemas.ConnectionInfo:
        p = parse_platform(platform)
        if p is Platform.UBER:
            return schemas.ConnectionInfo(
                platform=PLATFORM_NAMES[p],
                available=True,
                status="Public API with OAuth",
                steps=[
                    "Create a developer account at https://developer.uber.com",
                    "Register the app and copy its client id and secret",
                    "Set the redirect URI in the Uber dashboard",
                    "Set UBER_CLIENT_ID, UBER_CLIENT_SECRET and UBER_REDIRECT_URI",
                    "Connect Uber to start the OAuth flow",
                ],
            )
        return schemas.ConnectionInfo(
            platform=PLATFORM_NAMES[p],
            available=False,
            status="Private API, requires a corporate partnership",
            alternatives=MANUAL_ENTRY_ALTERNATIVES,
        )

    def connect(self, platform: Any) -> str:
        p = parse_platform(platform)
        if p is not Platform.UBER:
            raise _unavailable(p)
        return self.uber.authorization_url()

    def complete_oauth(self, platform: Any, code: str):
        p = parse_platform(platform)
        if p is not Platform.UBER:
            raise _unavailable(p)
        client = self.uber
        data = client.exchange_code(code)
        expires_in = data.get("expires_in") or 3600
        token = crud.save_platform_token(
            self.db, self.user_id, p.value,
            access_token=client.access_token,
            refresh_token=client.refresh_token,
            expires_at=datetime.now() + timedelta(seconds=expires_in),
        )
        logger.info("User %s connected %s", self.user_id, PLATFORM_NAMES[p])
        return token

    def sync(self, platform: Any, start: Optional[datetime] = None,
             end: Optional[datetime] = None) -> schemas.SyncResult:
        p = parse_platform(platform)
        if p is not Platform.UBER:
            raise _unavailable(p)
        if not self.is_connected(p):
            raise UpstreamError("Uber is not connected for this user")

        client = self.uber
        history = client.fetch_ride_history()
        # A token refresh during the fetch must survive the request
        if client.access_token:
            token = crud.get_platform_token(self.db, self.user_id, p.value)
            if token.access_token != client.access_token:
                crud.save_platform_token(
                    self.db, self.user_id, p.value,
                    access_token=client.access_token,
                    refresh_token=client.refresh_token,
                    expires_at=datetime.now() + timedelta(seconds=client.expires_in or 3600),
                )

        known = crud.get_external_ride_ids(self.db, self.user_id, p.value)
        count = 0
        for item in history:
            external_id = item.get("request_id")
            if external_id and external_id in known:
                continue
            ride = _uber_ride_to_create(item)
            if start and ride.date < start:
                continue
            if end and ride.date > end:
                continue
            try:
                crud.create_ride(self.db, self.user_id, ride, external_id=external_id)
            except ConflictError:
                logger.warning("Skipping duplicate %s ride %s", PLATFORM_NAMES[p], external_id)
                continue
            if external_id:
                known.add(external_id)
            count += 1

        logger.info("Synced %s new %s ride(s) for user %s", count, PLATFORM_NAMES[p], self.user_id)
        return schemas.SyncResult(platform=p.value, rides_count=count)

    def sync_all(self, start: Optional[datetime] = None,
                 end: Optional[datetime] = None) -> List[schemas.SyncResult]:
        # 99 and InDriver have no API; only a connected Uber account is synced
        if not self.is_connected(Platform.UBER):
            return []
        return [self.sync(Platform.UBER, start, end)]

    def disconnect(self, platform: Any) -> bool:
        p = parse_platform(platform)
        removed = crud.delete_platform_token(self.db, self.user_id, p.value)
        if p is Platform.UBER and self._uber is not None:
            self._uber.set_tokens(None, None)
        return removed

    def close(self):
        if self._uber is not None:
            self._uber.close()
