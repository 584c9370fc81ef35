"""Tests for the per-user notification mailbox.

**Feature: paysub, Property: Notification dedupe and acknowledgement**
**Validates: NotificationService.create, notify_manual_renewal, has_open,
list_for_user, acknowledge**
"""

import asyncio
import uuid

import pytest
from hypothesis import given, settings, strategies as st

from paysub.core.exceptions import NotFoundError
from paysub.core.store import InMemoryStore
from paysub.modules.notification.models import NotificationKind
from paysub.modules.notification.service import NotificationService


def make_service() -> NotificationService:
    return NotificationService(InMemoryStore())


class TestManualRenewalPrompts:
    """**Validates: notify_manual_renewal, has_open**"""

    @given(repeats=st.integers(min_value=1, max_value=10))
    @settings(max_examples=25)
    def test_prompt_is_not_repeated_while_open(self, repeats: int) -> None:
        """*For any* number of due sweeps, at most one open prompt exists per subscription."""

        async def run():
            service = make_service()
            user_id, subscription_id = uuid.uuid4(), uuid.uuid4()
            for _ in range(repeats):
                await service.notify_manual_renewal(user_id, subscription_id)
            return await service.list_for_user(user_id)

        notifications = asyncio.run(run())
        assert len(notifications) == 1
        assert notifications[0].kind == NotificationKind.MANUAL_RENEWAL_REQUIRED

    @pytest.mark.asyncio
    async def test_new_prompt_after_acknowledgement(self) -> None:
        service = make_service()
        user_id, subscription_id = uuid.uuid4(), uuid.uuid4()

        first = await service.notify_manual_renewal(user_id, subscription_id)
        await service.acknowledge(first.id)
        second = await service.notify_manual_renewal(user_id, subscription_id)

        assert second is not None
        assert second.id != first.id
        assert await service.has_open(subscription_id, NotificationKind.MANUAL_RENEWAL_REQUIRED)

    @pytest.mark.asyncio
    async def test_prompts_are_per_subscription(self) -> None:
        service = make_service()
        user_id = uuid.uuid4()

        await service.notify_manual_renewal(user_id, uuid.uuid4())
        await service.notify_manual_renewal(user_id, uuid.uuid4())

        assert len(await service.list_for_user(user_id)) == 2


class TestAcknowledge:
    """**Validates: acknowledge, list_for_user**"""

    @pytest.mark.asyncio
    async def test_acknowledge_is_idempotent(self) -> None:
        service = make_service()
        created = await service.create(
            uuid.uuid4(), NotificationKind.RENEWAL_SUCCEEDED, "Renewed"
        )

        first = await service.acknowledge(created.id)
        second = await service.acknowledge(created.id)

        assert first.acknowledged is True
        assert second.acknowledged_at == first.acknowledged_at

    @pytest.mark.asyncio
    async def test_unacknowledged_filter(self) -> None:
        service = make_service()
        user_id = uuid.uuid4()
        read = await service.create(user_id, NotificationKind.SUBSCRIPTION_EXPIRING, "Soon")
        await service.create(user_id, NotificationKind.SUBSCRIPTION_SUSPENDED, "Suspended")
        await service.acknowledge(read.id)

        unread = await service.list_for_user(user_id, unacknowledged_only=True)

        assert [n.kind for n in unread] == [NotificationKind.SUBSCRIPTION_SUSPENDED]
        assert len(await service.list_for_user(user_id)) == 2

    @pytest.mark.asyncio
    async def test_unknown_notification(self) -> None:
        service = make_service()

        with pytest.raises(NotFoundError):
            await service.acknowledge(uuid.uuid4())
        with pytest.raises(NotFoundError):
            await service.get(uuid.uuid4())
