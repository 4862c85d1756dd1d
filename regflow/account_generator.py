"""
Identity and credential generator for new registrations.
"""

import random
import string
import uuid
from typing import Dict, Optional

from faker import Faker

from .config import EngineConfig

SPECIAL_CHARS = "!@#$%^&*"


class AccountGenerator:
    def __init__(self, config: Optional[EngineConfig] = None, seed: Optional[int] = None):
        """Initialize generator with configuration."""
        self.config = config or EngineConfig()
        self.random = random.Random(seed)
        self.fake = Faker('en_US')  # Initialize Faker with English locale
        if seed is not None:
            self.fake.seed_instance(seed)

    def _random_string(self, length: int) -> str:
        alphabet = string.ascii_lowercase + string.digits
        return "".join(self.random.choice(alphabet) for _ in range(length))

    def generate_email(self, prefix: Optional[str] = None, domain: Optional[str] = None) -> str:
        """``<prefix>-<6 random chars>@<domain>``"""
        prefix = prefix or self.config.email_prefix
        domain = domain or self.config.email_domain
        return f"{prefix}-{self._random_string(6)}@{domain}"

    def generate_password(self, length: int = 12) -> str:
        """Generate a password with lowercase, uppercase, digit and special characters."""
        if length < 4:
            raise ValueError("Password length must be at least 4")

        # One of each class, then fill and shuffle
        chars = [
            self.random.choice(string.ascii_lowercase),
            self.random.choice(string.ascii_uppercase),
            self.random.choice(string.digits),
            self.random.choice(SPECIAL_CHARS),
        ]
        all_chars = string.ascii_letters + string.digits + SPECIAL_CHARS
        chars += [self.random.choice(all_chars) for _ in range(length - len(chars))]
        self.random.shuffle(chars)
        return "".join(chars)

    def generate_username(self) -> str:
        return "user_" + self._random_string(8)

    def generate_real_name(self) -> Dict[str, str]:
        """Realistic first/last name for the step 1 form."""
        return {"first_name": self.fake.first_name(), "last_name": self.fake.last_name()}

    @staticmethod
    def generate_session_id() -> str:
        return str(uuid.uuid4())

    def generate_identity(self) -> Dict[str, str]:
        """Email, password and username for one attempt."""
        identity = {
            "email": self.generate_email(),
            "password": self.generate_password(),
            "username": self.generate_username(),
        }
        identity.update(self.generate_real_name())
        return identity
