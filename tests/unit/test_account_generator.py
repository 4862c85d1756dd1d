"""
Unit tests for identity and credential generation
"""

import re
import string

import pytest

from regflow.account_generator import SPECIAL_CHARS, AccountGenerator
from regflow.config import EngineConfig


class TestAccountGenerator:
    """Test class for AccountGenerator functionality"""

    def setup_method(self):
        self.generator = AccountGenerator(seed=42)

    def test_email_format(self):
        for _ in range(20):
            email = self.generator.generate_email()
            assert re.fullmatch(r"reg-[a-z0-9]{6}@example\.com", email), email

    def test_email_uses_config(self):
        config = EngineConfig()
        config.email_prefix = "signup"
        config.email_domain = "mail.test"
        email = AccountGenerator(config).generate_email()

        assert email.startswith("signup-")
        assert email.endswith("@mail.test")

    def test_password_contains_every_class(self):
        for _ in range(50):
            password = self.generator.generate_password()
            assert len(password) == 12
            assert any(c in string.ascii_lowercase for c in password)
            assert any(c in string.ascii_uppercase for c in password)
            assert any(c in string.digits for c in password)
            assert any(c in SPECIAL_CHARS for c in password)

    def test_password_too_short(self):
        with pytest.raises(ValueError):
            self.generator.generate_password(3)

    def test_username_format(self):
        assert re.fullmatch(r"user_[a-z0-9]{8}", self.generator.generate_username())

    def test_session_ids_are_uuid4(self):
        first = AccountGenerator.generate_session_id()
        assert re.fullmatch(r"[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}", first)
        assert first != AccountGenerator.generate_session_id()

    def test_identity_fields(self):
        identity = self.generator.generate_identity()
        assert set(identity) == {"email", "password", "username", "first_name", "last_name"}
        assert identity["first_name"] and identity["last_name"]

    def test_seed_is_reproducible(self):
        first = AccountGenerator(seed=7).generate_identity()
        second = AccountGenerator(seed=7).generate_identity()
        assert first == second

    def test_emails_are_unique_within_a_batch(self):
        emails = {self.generator.generate_email() for _ in range(200)}
        assert len(emails) == 200
