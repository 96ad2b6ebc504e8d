"""
Unit Tests for accounts and content
"""

import pytest
from datetime import datetime, timezone

from wallet.accounts import AccountService
from wallet.content import ContentService
from wallet.errors import DuplicateUsernameError, NotFoundError, UnauthorizedError
from wallet.models import (
    CreatePostRequest,
    EntryReason,
    RegisterUserRequest,
    Role,
    SendMessageRequest,
    UpdateProfileRequest,
)
from wallet.storage import InMemoryStorage
from wallet.subscriptions import SubscriptionService


def setup_services():
    storage = InMemoryStorage(clock=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc))
    accounts = AccountService(storage)
    admin = accounts.register_user(RegisterUserRequest(username="admin", name="Creator"))
    fan = accounts.register_user(RegisterUserRequest(username="fan", name="Fan"))
    return storage, accounts, ContentService(storage), admin, fan


class TestAccounts:
    """Tests for registration, verification and balances."""

    def test_admin_username_gets_admin_role(self):
        """Test that the configured admin username registers as admin."""
        storage, accounts, content, admin, fan = setup_services()

        assert admin.role == Role.ADMIN
        assert fan.role == Role.USER
        assert accounts.get_admin().id == admin.id

    def test_duplicate_username(self):
        """Test that usernames are unique."""
        storage, accounts, content, admin, fan = setup_services()

        with pytest.raises(DuplicateUsernameError):
            accounts.register_user(RegisterUserRequest(username="FAN", name="Copycat"))

    def test_verify_user(self):
        """Test that verification flips the flag."""
        storage, accounts, content, admin, fan = setup_services()

        assert accounts.verify_user(fan.id).is_verified is True

        with pytest.raises(NotFoundError):
            accounts.verify_user(999)

    def test_update_own_profile(self):
        """Test that users edit their own name and bio and leave other fields alone."""
        storage, accounts, content, admin, fan = setup_services()

        updated = accounts.update_profile(fan.id, fan.id, UpdateProfileRequest(bio="Night owl"))

        assert updated.bio == "Night owl"
        assert updated.name == "Fan"
        assert updated.role == Role.USER

    def test_profile_edit_permissions(self):
        """Test that only the user or the admin edits a profile, and only the admin changes roles."""
        storage, accounts, content, admin, fan = setup_services()
        other = accounts.register_user(RegisterUserRequest(username="other", name="Other"))

        with pytest.raises(UnauthorizedError):
            accounts.update_profile(other.id, fan.id, UpdateProfileRequest(name="Hacked"))
        with pytest.raises(UnauthorizedError):
            accounts.update_profile(fan.id, fan.id, UpdateProfileRequest(role=Role.ADMIN))

        promoted = accounts.update_profile(admin.id, fan.id, UpdateProfileRequest(role=Role.ADMIN))

        assert promoted.role == Role.ADMIN
        assert accounts.get_user(fan.id).name == "Fan"

    def test_ledger_history_paginates(self):
        """Test that history is newest first and reports the current balance."""
        storage, accounts, content, admin, fan = setup_services()
        for amount in (100, 200, 300):
            storage.credit(fan.id, amount, EntryReason.TOP_UP)

        history = accounts.get_ledger_history(fan.id, limit=2)

        assert history.total_count == 3
        assert [e.amount for e in history.entries] == [300, 200]
        assert history.current_balance == 600
        assert accounts.get_balance(fan.id).balance == 600

    def test_admin_stats(self):
        """Test that earnings sum subscriptions, tips and purchases."""
        storage, accounts, content, admin, fan = setup_services()
        storage.credit(fan.id, 10_000, EntryReason.TOP_UP)
        SubscriptionService(storage).subscribe(fan.id, 1)
        storage.add_tip(fan.id, admin.id, 150)
        post = storage.add_post(admin.id, "Premium", is_premium=True, premium_price=400)
        storage.add_purchase(fan.id, 400, post_id=post.id)

        stats = accounts.admin_stats()

        assert stats.total_users == 2
        assert stats.total_posts == 1
        assert stats.total_subscribers == 1
        assert stats.total_earnings == 799 + 150 + 400


class TestContent:
    """Tests for posts and messages."""

    def test_create_and_list_posts(self):
        """Test that posts are listed newest first."""
        storage, accounts, content, admin, fan = setup_services()
        first = content.create_post(admin.id, CreatePostRequest(content="One"))
        second = content.create_post(admin.id, CreatePostRequest(content="Two", is_premium=True, premium_price=500))

        assert [p.id for p in content.list_posts()] == [second.id, first.id]
        assert content.get_post(second.id).premium_price == 500

    def test_only_owner_or_admin_deletes(self):
        """Test post deletion permissions."""
        storage, accounts, content, admin, fan = setup_services()
        post = content.create_post(admin.id, CreatePostRequest(content="Mine"))

        with pytest.raises(UnauthorizedError):
            content.delete_post(fan.id, post.id)

        content.delete_post(admin.id, post.id)
        with pytest.raises(NotFoundError):
            content.get_post(post.id)

    def test_messaging_creator_requires_subscription(self):
        """Test that fans must subscribe before messaging the creator."""
        storage, accounts, content, admin, fan = setup_services()

        with pytest.raises(UnauthorizedError):
            content.send_message(fan.id, SendMessageRequest(receiver_id=admin.id, content="Hi"))

        storage.credit(fan.id, 1000, EntryReason.TOP_UP)
        SubscriptionService(storage).subscribe(fan.id, 1)
        message = content.send_message(fan.id, SendMessageRequest(receiver_id=admin.id, content="Hi"))

        assert message.is_unlocked is True

    def test_only_admin_sends_ppv(self):
        """Test that PPV messages come from the admin only."""
        storage, accounts, content, admin, fan = setup_services()
        other = accounts.register_user(RegisterUserRequest(username="other", name="Other"))

        with pytest.raises(UnauthorizedError):
            content.send_message(fan.id, SendMessageRequest(
                receiver_id=other.id, content="Pay me", is_ppv=True, ppv_price=100))

        message = content.send_message(admin.id, SendMessageRequest(
            receiver_id=fan.id, content="Exclusive", is_ppv=True, ppv_price=100))

        assert message.is_unlocked is False
        assert content.get_conversation(fan.id, admin.id)[0].id == message.id

    def test_conversation_list_shows_last_message(self):
        """Test that conversations are grouped by counterpart, most recent first."""
        storage, accounts, content, admin, fan = setup_services()
        other = accounts.register_user(RegisterUserRequest(username="other", name="Other"))
        first = content.send_message(admin.id, SendMessageRequest(receiver_id=fan.id, content="Welcome"))
        reply = content.send_message(fan.id, SendMessageRequest(receiver_id=other.id, content="Hey"))
        latest = content.send_message(admin.id, SendMessageRequest(receiver_id=fan.id, content="Still there?"))

        conversations = content.list_conversations(fan.id)

        assert [c.user.id for c in conversations] == [admin.id, other.id]
        assert conversations[0].last_message.id == latest.id
        assert conversations[1].last_message.id == reply.id
        assert first.id not in [c.last_message.id for c in conversations]
        assert [c.user.id for c in content.list_conversations(other.id)] == [fan.id]
