"""Unit tests for CredentialVerifier."""

from ephemera.service.passwords import PASSWORD_ALGO


class TestPasswordHashing:
    """Tests for argon2 hashing and verification."""

    def test_hash_is_argon2id(self, fast_verifier):
        """Hashes are encoded argon2id strings."""
        pwd_hash = fast_verifier.hash("TestPassword123!")
        assert pwd_hash.startswith("$argon2id$")
        assert fast_verifier.algo == PASSWORD_ALGO

    def test_hash_is_salted(self, fast_verifier):
        """The same password hashes differently every time."""
        assert fast_verifier.hash("TestPassword123!") != fast_verifier.hash("TestPassword123!")

    def test_verify_accepts_correct_password(self, fast_verifier):
        pwd_hash = fast_verifier.hash("TestPassword123!")
        assert fast_verifier.verify("TestPassword123!", pwd_hash) is True

    def test_verify_rejects_wrong_password(self, fast_verifier):
        pwd_hash = fast_verifier.hash("TestPassword123!")
        assert fast_verifier.verify("WrongPassword123!", pwd_hash) is False

    def test_verify_never_raises_on_bad_hash(self, fast_verifier):
        """Malformed or empty stored hashes are a plain mismatch."""
        assert fast_verifier.verify("anything", "not-a-hash") is False
        assert fast_verifier.verify("anything", "") is False
        assert fast_verifier.verify("anything", None) is False
        assert fast_verifier.verify("anything", "$argon2id$v=19$m=1,t=1,p=1$bad$bad") is False


class TestPasswordRecords:
    """Tests for (hash, algo) records as stored next to a user."""

    def test_verify_record_matches(self, fast_verifier):
        record = fast_verifier.hash_with_algo("TestPassword123!")
        assert record[1] == PASSWORD_ALGO
        assert fast_verifier.verify_record("TestPassword123!", record) is True

    def test_verify_record_rejects_unknown_algo(self, fast_verifier):
        """A record written by another algorithm never verifies."""
        pwd_hash = fast_verifier.hash("TestPassword123!")
        assert fast_verifier.verify_record("TestPassword123!", (pwd_hash, "bcrypt")) is False

    def test_verify_record_missing(self, fast_verifier):
        assert fast_verifier.verify_record("TestPassword123!", None) is False
