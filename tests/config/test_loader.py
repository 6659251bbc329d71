"""
Tests for the YAML configuration loader.

Covers:
- Bundled defaults parse into SpendConfig
- Checksum identity
- Validation failures raise InvalidConfigurationError
- $SPEND_CONFIG_PATH resolution
"""

from decimal import Decimal

import pytest

from spend_config import CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH, get_active_config
from spend_config.loader import compute_checksum, load_config, parse_config
from spend_kernel.exceptions import InvalidConfigurationError


class TestBundledDefaults:

    def test_defaults_load(self):
        config = load_config(DEFAULT_CONFIG_PATH)

        assert config.currency == "INR"
        assert config.payment_method == "NEFT"
        assert config.tick_interval_seconds == 60
        assert [s.code for s in config.tds_sections] == ["194C", "194J", "194I", "194H", "194A"]
        assert config.tds_sections[0].rate == Decimal("1")
        assert len(config.seed_policies) == 4
        assert config.seed_chain_rules[-1].amount_max is None

    def test_override_roles_case_insensitive(self):
        config = load_config(DEFAULT_CONFIG_PATH)
        assert config.can_override("finance")
        assert not config.can_override("MANAGER")

    def test_checksum_is_stable(self):
        assert load_config(DEFAULT_CONFIG_PATH).checksum == load_config(DEFAULT_CONFIG_PATH).checksum


class TestValidation:

    def test_checksum_changes_with_content(self):
        assert compute_checksum({"currency": "INR"}) != compute_checksum({"currency": "USD"})

    def test_negative_rate(self):
        with pytest.raises(InvalidConfigurationError):
            parse_config({"tds_sections": [{"code": "X", "rate": "-1"}]})

    def test_rate_above_100(self):
        with pytest.raises(InvalidConfigurationError):
            parse_config({"tds_sections": [{"code": "X", "rate": "101"}]})

    def test_non_positive_interval(self):
        with pytest.raises(InvalidConfigurationError):
            parse_config({"tick_interval_seconds": 0})

    def test_unknown_policy_type(self):
        with pytest.raises(InvalidConfigurationError):
            parse_config({"seed": {"policies": [{"name": "p", "type": "VIBES"}]}})

    def test_empty_approver_chain(self):
        with pytest.raises(InvalidConfigurationError):
            parse_config({"seed": {"chain_rules": [{"name": "r", "approver_chain": []}]}})

    @pytest.mark.parametrize("section, key", [
        ({"threshold": "30000", "rate": "1"}, "tds_sections.code"),
        ({"code": "194C", "threshold": "30000"}, "tds_sections.194C.rate"),
    ])
    def test_tds_section_missing_key(self, section, key):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            parse_config({"tds_sections": [section]})
        assert exc_info.value.key == key

    @pytest.mark.parametrize("step, key", [
        ({"role": "MANAGER", "level": "one"}, "seed.chain_rules.r.approver_chain.level"),
        ({"role": "MANAGER", "level": 0}, "seed.chain_rules.r.approver_chain.level"),
        ({"level": 1}, "seed.chain_rules.r.approver_chain.role"),
        ({"role": "MANAGER"}, "seed.chain_rules.r.approver_chain.level"),
        ("MANAGER", "seed.chain_rules.r.approver_chain"),
    ])
    def test_bad_approver_step(self, step, key):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            parse_config({"seed": {"chain_rules": [{"name": "r", "approver_chain": [step]}]}})
        assert exc_info.value.key == key

    def test_seed_without_name(self):
        with pytest.raises(InvalidConfigurationError):
            parse_config({"seed": {"policies": [{"type": "AMOUNT"}]}})

    def test_empty_document_uses_defaults(self):
        config = parse_config({})
        assert config.tds_sections == ()
        assert config.escalation_hours == 48


class TestActiveConfig:

    def test_env_var_path(self, tmp_path, monkeypatch, captured_logs):
        path = tmp_path / "spend.yaml"
        path.write_text("currency: USD\ntick_interval_seconds: 5\n")
        monkeypatch.setenv(CONFIG_PATH_ENV, str(path))

        config = get_active_config()

        assert config.currency == "USD"
        assert config.tick_interval_seconds == 5
        loaded = [r for r in captured_logs() if r["message"] == "spend_config_loaded"]
        assert loaded and loaded[0]["checksum"] == config.checksum

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")
