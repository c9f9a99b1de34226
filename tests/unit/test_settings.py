"""
Unit tests for ACME settings loading and validation.
"""
import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from certkeeper import settings as settings_module
from certkeeper.settings import AcmeSettings, clear_acme_settings_cache, load_acme_settings


@pytest.fixture(autouse=True)
def clear_cache():
    clear_acme_settings_cache()
    yield
    clear_acme_settings_cache()


class TestAcmeSettings:
    """Tests for AcmeSettings validation."""

    def test_domains_are_normalised(self):
        settings = AcmeSettings(certificate_domains=[" Example.TEST ", "https://www.example.test/", ""])

        assert settings.certificate_domains == ["example.test", "www.example.test"]

    def test_domains_are_converted_to_ace(self):
        settings = AcmeSettings(certificate_domains=["bücher.example"])

        assert settings.certificate_domains == ["xn--bcher-kva.example"]

    def test_duplicate_domains_collapse(self):
        settings = AcmeSettings(certificate_domains=["example.test", "EXAMPLE.test"])

        assert settings.certificate_domains == ["example.test"]

    def test_unknown_challenge_handler_rejected(self):
        with pytest.raises(ValidationError):
            AcmeSettings(challenge_handler="dns")

    def test_certificate_paths(self, tmp_path):
        settings = AcmeSettings(
            certificate_directory=str(tmp_path),
            certificate_filename="chain.pem",
            certificate_key_filename="key.pem",
        )

        paths = settings.certificate_paths()

        assert paths.fullchain_path == tmp_path / "chain.pem"
        assert paths.key_path == tmp_path / "key.pem"


class TestLoadAcmeSettings:
    """Tests for load_acme_settings()."""

    def test_loads_from_file(self, tmp_path):
        config_file = tmp_path / "acme_settings.json"
        config_file.write_text(json.dumps({
            "enabled": True,
            "certificate_domains": ["example.test"],
            "directory_endpoint": settings_module.LETSENCRYPT_STAGING,
        }))

        settings = load_acme_settings(config_file)

        assert settings.enabled is True
        assert settings.certificate_domains == ["example.test"]
        assert settings.directory_endpoint == settings_module.LETSENCRYPT_STAGING

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_acme_settings(tmp_path / "missing.json")

        assert settings.enabled is False
        assert settings.directory_endpoint == settings_module.LETSENCRYPT_PRODUCTION

    def test_invalid_file_gives_defaults(self, tmp_path):
        config_file = tmp_path / "acme_settings.json"
        config_file.write_text("{not json")

        settings = load_acme_settings(config_file)

        assert settings.enabled is False

    def test_result_is_cached(self, tmp_path):
        first = load_acme_settings(tmp_path / "missing.json")

        assert load_acme_settings(Path("/nonexistent")) is first
