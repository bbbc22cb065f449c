import logging
import secrets
import string

from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8
MAX_ATTEMPTS = 5

# Codes are matched case-insensitively, so the fallback keeps the upper-case alphabet.
FALLBACK_LENGTH = 12


def random_code(length: int = CODE_LENGTH, alphabet: str = CODE_ALPHABET) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


class ReferralCodeGenerator:
    """Produces referral codes that collide with no existing referral or custom code."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def generate(self) -> str:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            code = random_code()
            if not self.storage.code_exists(code):
                return code
            logger.debug("Referral code collision on attempt %d", attempt)

        logger.warning("No unique %d-character code after %d attempts, using fallback", CODE_LENGTH, MAX_ATTEMPTS)
        while True:
            code = random_code(FALLBACK_LENGTH)
            if not self.storage.code_exists(code):
                return code
