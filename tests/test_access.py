"""Tests for the access resolver, its session cache, and sign-in / sign-out."""
import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from portal_backend import entitlements, local_cache as lc, progress
from portal_backend.access import (
    Account,
    AccessResolver,
    PortalSession,
    SessionContext,
)
from portal_backend.schemas import AccessToken, EntitlementView

ACCOUNT = Account("acct_1", "learner@example.com")
FAR_FUTURE = 10 ** 13


class CountingFetcher:
    """Returns a fixed entitlement after a short pause, counting calls."""

    def __init__(self, ent=None, error=None):
        self.ent = ent
        self.error = error
        self.calls = 0

    async def __call__(self, account):
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        return self.ent


def entitlement(**fields):
    return EntitlementView(email="learner@example.com", account_id="acct_1", **fields)


@pytest.fixture
def ctx():
    return SessionContext(cache=lc.MemoryCacheStore())


class TestResolutionOrder:
    def test_no_access_by_default(self, ctx):
        decision = asyncio.run(AccessResolver(CountingFetcher()).resolve(ctx))
        assert decision.source == "none"
        assert decision.has_access is False

    def test_course_only_entitlement(self, ctx):
        ctx.account = ACCOUNT
        resolver = AccessResolver(CountingFetcher(entitlement(course_access=True)))

        assert asyncio.run(resolver.has_valid_access(ctx)) is True
        assert asyncio.run(resolver.has_course_access(ctx)) is True
        assert asyncio.run(resolver.has_member_access(ctx)) is False

    def test_past_due_member_passes_coarse_but_not_strict_check(self, ctx):
        ctx.account = ACCOUNT
        resolver = AccessResolver(CountingFetcher(entitlement(member_access=True, membership_status="past_due")))

        decision = asyncio.run(resolver.resolve(ctx))
        assert decision.source == "account"
        assert decision.has_access is True
        assert decision.member_access is False

    def test_active_member(self, ctx):
        ctx.account = ACCOUNT
        resolver = AccessResolver(CountingFetcher(entitlement(member_access=True, membership_status="active")))
        assert asyncio.run(resolver.has_member_access(ctx)) is True

    def test_account_entitlement_wins_over_token(self, ctx):
        ctx.account = ACCOUNT
        lc.set_access_token(ctx.cache, AccessToken(course_access=True, member_access=True, expires_at=FAR_FUTURE))
        resolver = AccessResolver(CountingFetcher(entitlement(member_access=False, membership_status="canceled")))

        decision = asyncio.run(resolver.resolve(ctx))
        assert decision.source == "account"
        assert decision.has_access is False

    def test_token_used_without_account(self, ctx):
        fetcher = CountingFetcher()
        lc.set_access_token(ctx.cache, AccessToken(member_access=True, expires_at=FAR_FUTURE, plan="membership"))

        decision = asyncio.run(AccessResolver(fetcher).resolve(ctx))
        assert decision.source == "token"
        assert decision.member_access is True
        assert fetcher.calls == 0

    def test_expired_token_falls_through_to_legacy(self, ctx):
        lc.set_access_token(ctx.cache, AccessToken(course_access=True, expires_at=1))
        ctx.cache.set_item(lc.LEGACY_ACCESS_KEY, "true")
        ctx.cache.set_item(lc.LEGACY_TIER_KEY, "standard")

        decision = asyncio.run(AccessResolver(CountingFetcher()).resolve(ctx))
        assert decision.source == "legacy"
        assert decision.has_access is True
        assert decision.course_access is False
        assert decision.tier == "standard"
        assert ctx.cache.get_item(lc.TOKEN_KEY) is None

    def test_account_without_entitlement_falls_back_to_token(self, ctx):
        ctx.account = ACCOUNT
        lc.set_access_token(ctx.cache, AccessToken(course_access=True, expires_at=FAR_FUTURE))
        decision = asyncio.run(AccessResolver(CountingFetcher(None)).resolve(ctx))
        assert decision.source == "token"


class TestEntitlementCache:
    def test_concurrent_checks_share_one_fetch(self, ctx):
        ctx.account = ACCOUNT
        fetcher = CountingFetcher(entitlement(course_access=True))
        resolver = AccessResolver(fetcher)

        async def page_load():
            return await asyncio.gather(
                resolver.has_valid_access(ctx),
                resolver.has_course_access(ctx),
                resolver.has_member_access(ctx),
                resolver.get_entitlement(ctx),
            )

        results = asyncio.run(page_load())
        assert results[:3] == [True, True, False]
        assert fetcher.calls == 1

    def test_cached_until_refresh(self, ctx):
        ctx.account = ACCOUNT
        fetcher = CountingFetcher(entitlement(course_access=True))
        resolver = AccessResolver(fetcher)

        async def run():
            await resolver.get_entitlement(ctx)
            await resolver.get_entitlement(ctx)
            fetcher.ent = entitlement(member_access=True, membership_status="active")
            return await resolver.refresh(ctx)

        ent = asyncio.run(run())
        assert fetcher.calls == 2
        assert ent.member_access is True

    def test_failed_fetch_is_not_cached(self, ctx):
        ctx.account = ACCOUNT
        fetcher = CountingFetcher(error=OperationalError("SELECT", {}, Exception("down")))
        resolver = AccessResolver(fetcher)

        assert asyncio.run(resolver.get_entitlement(ctx)) is None
        assert ctx.loaded is False

        fetcher.error = None
        fetcher.ent = entitlement(course_access=True)
        assert asyncio.run(resolver.get_entitlement(ctx)).course_access is True
        assert fetcher.calls == 2

    def test_default_fetcher_reads_the_store(self, ctx):
        entitlements.upsert_by_email("learner@example.com", {"course_access": True})
        ctx.account = ACCOUNT
        assert asyncio.run(AccessResolver().has_course_access(ctx)) is True


class TestPortalSession:
    def test_sign_in_links_purchase_and_merges_progress(self, ctx):
        entitlements.upsert_by_email("Learner@Example.com", {"course_access": True})
        lc.mark_lesson_complete_local(ctx.cache, "1-1", now=1000)
        session = PortalSession(ctx)

        async def run():
            task = await session.sign_in(ACCOUNT)
            return await task

        result = asyncio.run(run())
        assert result.status == "merged"
        assert entitlements.find_entitlement(account_id="acct_1").course_access is True
        assert progress.get_progress("acct_1") == {"1-1": {"completed": True, "completedAt": 1000}}
        assert lc.get_local_progress(ctx.cache) == {}

    def test_sign_in_survives_link_failure(self, ctx):
        def broken_link(email, account_id):
            raise OperationalError("UPDATE", {}, Exception("down"))

        session = PortalSession(ctx, linker=broken_link)

        async def run():
            return await (await session.sign_in(ACCOUNT))

        assert asyncio.run(run()).status == "skipped"
        assert ctx.account == ACCOUNT

    def test_sign_in_merge_tolerates_corrupt_local_timestamps(self, ctx):
        ctx.cache.set_item(lc.PROGRESS_KEY, '{"1-1": {"completed": true, "completedAt": "yesterday"}}')
        session = PortalSession(ctx)

        async def run():
            return await (await session.sign_in(ACCOUNT))

        assert asyncio.run(run()).status == "merged"
        assert set(progress.get_progress("acct_1")) == {"1-1"}

    def test_background_merge_is_held_until_done(self, ctx):
        session = PortalSession(ctx)

        async def run():
            task = await session.sign_in(ACCOUNT)
            held = task in ctx.background
            await task
            await asyncio.sleep(0)
            return held

        assert asyncio.run(run()) is True
        assert ctx.background == set()

    def test_sign_out_clears_cache_and_local_access(self, ctx):
        ctx.account = ACCOUNT
        fetcher = CountingFetcher(entitlement(course_access=True))
        session = PortalSession(ctx, resolver=AccessResolver(fetcher))
        session.store_verified_token(AccessToken(course_access=True, expires_at=FAR_FUTURE))
        ctx.cache.set_item(lc.LEGACY_ACCESS_KEY, "true")

        asyncio.run(session.resolver.get_entitlement(ctx))
        session.sign_out()

        assert ctx.account is None
        assert ctx.entitlement is None and ctx.loaded is False
        assert asyncio.run(session.resolver.resolve(ctx)).source == "none"
