import secrets


class TrueRNG:
    """
    A wrapper around Python's `secrets` module to provide cryptographically strong
    random numbers for round resolution and claim tokens.
    """

    @staticmethod
    def random_int(min_val: int, max_val: int) -> int:
        """Returns a random integer in the range [min_val, max_val] (inclusive)."""
        # secrets.randbelow(n) returns [0, n). So we need (max - min + 1)
        if min_val > max_val:
            raise ValueError("min_val must be less than or equal to max_val")
        return min_val + secrets.randbelow(max_val - min_val + 1)

    @staticmethod
    def token() -> str:
        """Returns an opaque, URL-safe claim token."""
        return secrets.token_urlsafe(24)


rng = TrueRNG()
