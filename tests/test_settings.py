from fabtrack import NonComplianceSeverity
from fabtrack.gating import Allowed, Denied, FeatureKeys, StaticFeatureGate
from fabtrack.settings import EngineOptions, Settings


def test_defaults_use_memory_store_and_all_features():
    settings = Settings.from_env({})
    assert settings.uses_memory_store
    assert settings.enabled_features == FeatureKeys.ALL
    assert settings.log_level == "INFO"
    assert not settings.demo_data
    assert settings.engine == EngineOptions()
    assert settings.engine.default_ncr_severity is NonComplianceSeverity.MAJOR


def test_environment_overrides():
    settings = Settings.from_env(
        {
            "FABTRACK_DATABASE": "/tmp/plant.sqlite3",
            "FABTRACK_LOG_LEVEL": "debug",
            "FABTRACK_ENABLED_FEATURES": "manufacturing_progress, en1090_compliance",
            "FABTRACK_MAX_RETRIES": "7",
            "FABTRACK_DEMO_DATA": "true",
        }
    )
    assert not settings.uses_memory_store
    assert settings.database_path == "/tmp/plant.sqlite3"
    assert settings.log_level == "DEBUG"
    assert settings.enabled_features == {
        FeatureKeys.MANUFACTURING_PROGRESS,
        FeatureKeys.EN1090_COMPLIANCE,
    }
    assert settings.engine.max_retries == 7
    assert settings.demo_data


def test_empty_feature_list_disables_everything():
    settings = Settings.from_env({"FABTRACK_ENABLED_FEATURES": ""})
    assert settings.enabled_features == frozenset()


def test_static_gate_with_tenant_overrides():
    gate = StaticFeatureGate(
        FeatureKeys.ALL,
        tenant_overrides={"basic": [FeatureKeys.MANUFACTURING_PROGRESS]},
    )
    assert gate.check(None, FeatureKeys.OUTSOURCING_MANAGEMENT) == Allowed()
    assert gate.check("premium", FeatureKeys.OUTSOURCING_MANAGEMENT).allowed
    denied = gate.check("basic", FeatureKeys.OUTSOURCING_MANAGEMENT)
    assert isinstance(denied, Denied)
    assert not denied.allowed
    assert "outsourcing_management" in denied.reason
