import re
from typing import Optional


class ISBNValidator:
    """ISBN-10 / ISBN-13 validation with checksum checks."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # Weighted 1..10 checksum, 'X' stands for 10 in the last position only
            if not s[:9].isdigit():
                return False
            check = s[-1]
            if check == 'X':
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            total = sum(i * int(ch) for i, ch in enumerate(s[:9], 1))
            return (total + 10 * check_val) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(s[:12]))
            return (10 - (total % 10)) % 10 == int(s[-1])
        return False


class TextValidator:
    """Basic checks for catalog text fields."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        # "1984" is a fine title, so only emptiness is rejected
        return bool(title and title.strip())

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if author is None:
            return False
        t = author.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags
        return re.sub(r"<[^>]*>", "", text).strip()
