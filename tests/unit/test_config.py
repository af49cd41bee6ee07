"""
Tests for pipeline configuration.
"""

from costsync.config.settings import DEFAULTS, PipelineConfig, get_config
from costsync.utils.resilience import RetryPolicy


class TestPipelineConfig:
    def test_defaults_applied(self):
        config = PipelineConfig({})

        assert config.sync["max_workers"] == 4
        assert config.sync["account_timeout"] == 35.0
        assert config.anomaly["variance_threshold"] == 20.0
        assert config.forecast["decay"] == 0.95
        assert config.resilience["circuit_breaker"]["failure_threshold"] == 5

    def test_nested_overrides_merge(self):
        config = PipelineConfig({"resilience": {"retry": {"max_attempts": 5}}, "sync": {"max_workers": 8}})

        assert config.resilience["retry"]["max_attempts"] == 5
        assert config.resilience["retry"]["base_delay"] == 1.0
        assert config.resilience["circuit_breaker"]["reset_timeout"] == 60.0
        assert config.sync["max_workers"] == 8
        assert config.sync["lookback_days"] == 30

    def test_retry_policy(self):
        config = PipelineConfig({"resilience": {"retry": {"max_attempts": 2, "timeout": 10}}})
        assert config.retry_policy() == RetryPolicy(max_attempts=2, timeout=10.0)

    def test_provider_config(self):
        config = PipelineConfig({"providers": {"aws": {"metric": "AmortizedCost"}}})
        assert config.get_provider_config("aws") == {"metric": "AmortizedCost"}
        assert config.get_provider_config("vultr") == {}

    def test_as_dict_has_every_section(self):
        assert set(PipelineConfig({}).as_dict()) == set(DEFAULTS)

    def test_defaults_not_mutated(self):
        PipelineConfig({"sync": {"max_workers": 99}}).sync
        assert DEFAULTS["sync"]["max_workers"] == 4


class TestBundledConfig:
    def test_yaml_loaded(self):
        config = get_config()
        assert config.providers["aws"]["metric"] == "UnblendedCost"
        assert "tax" in config.normalizer["denylist"]
        assert config.cache["type"] in ("memory", "disk")
