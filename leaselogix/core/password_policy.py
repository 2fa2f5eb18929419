"""
Password policy applied when an account is created through an invitation.

Requirements:
- Minimum 8 characters
- Not a well-known password
- Cannot contain the email local part
"""

from typing import List, Optional


class PasswordPolicy:
    """Minimum password requirements for self-registered accounts."""

    MIN_LENGTH = 8
    MAX_LENGTH = 128
    COMMON_PASSWORDS = {
        "password", "12345678", "123456789", "qwertyuiop", "iloveyou",
        "sunshine", "football", "baseball", "trustno1", "letmein1",
        "password1", "password123", "qwerty123", "welcome1", "admin123",
    }

    @classmethod
    def validate(cls, password: str, email: Optional[str] = None) -> tuple[bool, List[str]]:
        """
        Validate password against the policy.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = []

        if len(password) < cls.MIN_LENGTH:
            errors.append(f"Password must be at least {cls.MIN_LENGTH} characters long")

        if len(password) > cls.MAX_LENGTH:
            errors.append(f"Password must be at most {cls.MAX_LENGTH} characters long")

        if password.lower() in cls.COMMON_PASSWORDS:
            errors.append("Password is too common. Please choose a stronger password")

        if email:
            username = email.lower().split("@")[0]
            if len(username) >= 3 and username in password.lower():
                errors.append("Password cannot contain your email address")

        return len(errors) == 0, errors
