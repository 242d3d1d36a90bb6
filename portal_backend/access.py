# portal_backend/access.py
"""
Who gets into the portal, decided on the client.

Resolution order, first match wins:
  1. signed-in account → its entitlement row (cached on the SessionContext)
  2. non-expired access token in the local cache
  3. legacy "access granted" flag (old sessions only)
  4. nothing

Everything cached lives on an explicit SessionContext; nothing is global.
Concurrent lookups for the same context share one in-flight fetch.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from . import entitlements, local_cache, progress
from .errors import PortalError
from .local_cache import LocalCacheStore
from .log import get_logger
from .progress import MergeResult, ProgressSink
from .schemas import AccessToken, EntitlementView

log = get_logger("access")

FETCH_ERRORS = (PortalError, SQLAlchemyError, OSError)


@dataclass(frozen=True)
class Account:
    account_id: str
    email: str


@dataclass(frozen=True)
class AccessDecision:
    source: str                     # "account" | "token" | "legacy" | "none"
    has_access: bool                # coarse: course OR member, past_due included
    course_access: bool = False
    member_access: bool = False     # strict member-only check
    tier: Optional[str] = None


NO_ACCESS = AccessDecision("none", False)


@dataclass
class SessionContext:
    """Per-browser state: the local cache plus what this session has fetched."""
    cache: LocalCacheStore
    account: Optional[Account] = None
    entitlement: Optional[EntitlementView] = None
    loaded: bool = False
    generation: int = 0
    inflight: Optional[asyncio.Task] = field(default=None, repr=False)
    background: Set[asyncio.Task] = field(default_factory=set, repr=False)

    def keep(self, task: asyncio.Task) -> asyncio.Task:
        """Hold a strong reference to `task` until it finishes."""
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task

    def invalidate(self) -> None:
        # bumping the generation orphans any fetch still in flight
        self.generation += 1
        self.entitlement = None
        self.loaded = False
        self.inflight = None


EntitlementFetcher = Callable[[Account], Awaitable[Optional[EntitlementView]]]


async def fetch_from_store(account: Account) -> Optional[EntitlementView]:
    return await asyncio.to_thread(
        entitlements.find_entitlement,
        account_id=account.account_id,
        email=account.email,
    )


class AccessResolver:
    def __init__(self, fetcher: EntitlementFetcher = fetch_from_store):
        self._fetch = fetcher

    # --- entitlement cache --------------------------------------------------
    async def get_entitlement(self, ctx: SessionContext) -> Optional[EntitlementView]:
        if ctx.account is None:
            return None
        if ctx.loaded:
            return ctx.entitlement
        if ctx.inflight is None:
            ctx.inflight = asyncio.ensure_future(self._load(ctx, ctx.account, ctx.generation))
        return await asyncio.shield(ctx.inflight)

    async def refresh(self, ctx: SessionContext) -> Optional[EntitlementView]:
        ctx.invalidate()
        return await self.get_entitlement(ctx)

    async def _load(self, ctx: SessionContext, account: Account, generation: int) -> Optional[EntitlementView]:
        try:
            ent = await self._fetch(account)
            ok = True
        except FETCH_ERRORS as e:
            log.error("entitlement_fetch_failed", account_id=account.account_id, error=str(e))
            ent, ok = None, False

        if ctx.generation == generation:
            ctx.inflight = None
            if ok:
                ctx.entitlement = ent
                ctx.loaded = True
        return ent

    # --- decisions ----------------------------------------------------------
    async def resolve(self, ctx: SessionContext) -> AccessDecision:
        ent = await self.get_entitlement(ctx)
        if ent is not None:
            return AccessDecision(
                "account",
                has_access=entitlements.has_valid_access(ent),
                course_access=entitlements.has_course_access(ent),
                member_access=entitlements.has_member_access(ent),
                tier=ent.membership_status,
            )

        token = local_cache.get_access_token(ctx.cache)
        if token is not None:
            return AccessDecision(
                "token",
                has_access=bool(token.course_access or token.member_access),
                course_access=token.course_access is True,
                member_access=token.member_access is True,
                tier=token.plan,
            )

        if local_cache.legacy_access_granted(ctx.cache):
            return AccessDecision("legacy", True, tier=local_cache.legacy_access_tier(ctx.cache))

        return NO_ACCESS

    async def has_valid_access(self, ctx: SessionContext) -> bool:
        return (await self.resolve(ctx)).has_access

    async def has_course_access(self, ctx: SessionContext) -> bool:
        return (await self.resolve(ctx)).course_access

    async def has_member_access(self, ctx: SessionContext) -> bool:
        return (await self.resolve(ctx)).member_access


class PortalSession:
    """Sign-in / sign-out side effects around one SessionContext."""

    def __init__(
        self,
        ctx: SessionContext,
        resolver: Optional[AccessResolver] = None,
        linker: Callable[[str, str], int] = entitlements.link_entitlements_by_email,
        sink: ProgressSink = progress.upsert_progress_records,
    ):
        self.ctx = ctx
        self.resolver = resolver or AccessResolver()
        self._link = linker
        self._sink = sink

    def store_verified_token(self, token: AccessToken) -> None:
        """Keep what /verify-session returned after checkout."""
        local_cache.set_access_token(self.ctx.cache, token)

    async def sign_in(self, account: Account) -> "asyncio.Task[MergeResult]":
        """
        Attach the account and link purchases made under its email.
        Progress merge runs as a background task; its result is returned
        for callers that want to wait, and is always logged.
        """
        self.ctx.invalidate()
        self.ctx.account = account
        try:
            await asyncio.to_thread(self._link, account.email, account.account_id)
        except FETCH_ERRORS as e:
            log.error("entitlement_link_failed", account_id=account.account_id, error=str(e))
        return self.ctx.keep(asyncio.create_task(self._merge(account)))

    async def _merge(self, account: Account) -> MergeResult:
        result = await asyncio.to_thread(
            progress.merge_local_progress,
            self.ctx.cache,
            account.account_id,
            self._sink,
        )
        log.info("sign_in_merge_done", account_id=account.account_id, status=result.status, lessons=result.lessons)
        return result

    def sign_out(self) -> None:
        self.ctx.invalidate()
        self.ctx.account = None
        local_cache.clear_access_token(self.ctx.cache)
        local_cache.clear_legacy_access(self.ctx.cache)
