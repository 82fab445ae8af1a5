"""Unit tests for configuration loading, validation and provider selection."""

from pathlib import Path

import pytest

from k8s_endpoint_updater.cli import (
    BridgeProvider,
    ConfigurationError,
    EnvProvider,
    EtcdProvider,
    RetryPolicy,
    UpdaterConfig,
    create_provider,
    load_config,
    validate_config,
)


class TestLoadConfig:
    def test_defaults(self) -> None:
        config = load_config(environ={})

        assert config == UpdaterConfig()
        assert config.namespace == "default"
        assert config.provider_kind == "env"
        assert config.env_prefix == "K8S_ENDPOINT_UPDATER_POD_"
        assert config.create_endpoints is True

    def test_environment_values_are_coerced(self) -> None:
        environ = {
            "SERVICE_NAME": " guest ",
            "SERVICE_NAMESPACE": "tenant-a",
            "PROVIDER_KIND": "bridge",
            "BRIDGE_NAME": "br-guest",
            "POD_NAMES": "a, b",
            "KUBERNETES_IN_CLUSTER": "true",
            "CREATE_ENDPOINTS": "no",
            "RETRY_MAX_ATTEMPTS": "3",
            "RETRY_INITIAL_INTERVAL": "0.25",
        }

        config = load_config(environ=environ)

        assert config.service == "guest"
        assert config.namespace == "tenant-a"
        assert config.provider_kind == "bridge"
        assert config.bridge_name == "br-guest"
        assert config.pod_names == ("a", "b")
        assert config.kubernetes_in_cluster is True
        assert config.create_endpoints is False
        assert config.retry_max_attempts == 3
        assert config.retry_initial_interval == 0.25

    def test_yaml_file_with_environment_override(self, tmp_path: Path) -> None:
        config_file = tmp_path / "updater.yaml"
        config_file.write_text(
            """
service: guest
namespace: from-file
provider_kind: etcd
etcd_address: http://etcd:2379
etcd_prefix: /pods
pod_names:
  - worker-0
  - worker-1
retry_max_elapsed: 120
annotate_pods: true
""",
            encoding="utf-8",
        )

        config = load_config(
            environ={"CONFIG_PATH": str(config_file), "SERVICE_NAMESPACE": "from-env"}
        )

        assert config.service == "guest"
        assert config.namespace == "from-env"
        assert config.provider_kind == "etcd"
        assert config.pod_names == ("worker-0", "worker-1")
        assert config.retry_max_elapsed == 120.0
        assert config.annotate_pods is True

    def test_explicit_path_beats_environment_path(self, tmp_path: Path) -> None:
        explicit = tmp_path / "explicit.yaml"
        explicit.write_text("service: explicit\n", encoding="utf-8")

        config = load_config(environ={"CONFIG_PATH": "/nonexistent.yaml"}, config_path=str(explicit))

        assert config.service == "explicit"

    def test_unknown_file_keys_are_ignored(self, tmp_path: Path) -> None:
        config_file = tmp_path / "updater.yaml"
        config_file.write_text("service: guest\nbogus: 1\n", encoding="utf-8")

        assert load_config(environ={}, config_path=str(config_file)).service == "guest"

    def test_empty_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "updater.yaml"
        config_file.write_text("", encoding="utf-8")

        assert load_config(environ={}, config_path=str(config_file)) == UpdaterConfig()

    def test_missing_file(self) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(environ={}, config_path="/nonexistent/updater.yaml")

    def test_file_must_be_mapping(self, tmp_path: Path) -> None:
        config_file = tmp_path / "updater.yaml"
        config_file.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(environ={}, config_path=str(config_file))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "updater.yaml"
        config_file.write_text("service: [unclosed\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_config(environ={}, config_path=str(config_file))

    def test_invalid_number(self) -> None:
        with pytest.raises(ConfigurationError, match="retry_max_attempts"):
            load_config(environ={"RETRY_MAX_ATTEMPTS": "many"})

    def test_retry_policy_from_config(self) -> None:
        config = UpdaterConfig(
            retry_max_attempts=4, retry_initial_interval=1.0, retry_max_interval=8.0, retry_max_elapsed=30.0
        )

        policy = config.retry_policy()

        assert policy == RetryPolicy(max_attempts=4, initial_interval=1.0, max_interval=8.0, max_elapsed=30.0)


class TestValidateConfig:
    def test_valid_env_config(self) -> None:
        assert validate_config(UpdaterConfig(service="guest")) == []

    def test_service_required(self) -> None:
        assert "SERVICE_NAME is required" in validate_config(UpdaterConfig())

    def test_bridge_requires_name(self) -> None:
        errors = validate_config(UpdaterConfig(service="guest", provider_kind="bridge"))

        assert errors == ["BRIDGE_NAME is required when PROVIDER_KIND=bridge"]

    def test_bridge_annotation_requires_identity(self) -> None:
        config = UpdaterConfig(
            service="guest", provider_kind="bridge", bridge_name="br0", annotate_pods=True
        )

        assert validate_config(config) == [
            "ANNOTATE_PODS with PROVIDER_KIND=bridge requires BRIDGE_IDENTITY"
        ]

    def test_etcd_requirements(self) -> None:
        errors = validate_config(UpdaterConfig(service="guest", provider_kind="etcd", etcd_kind="zk"))

        assert "ETCD_ADDRESS is required when PROVIDER_KIND=etcd" in errors
        assert "ETCD_PREFIX is required when PROVIDER_KIND=etcd" in errors
        assert any("ETCD_KIND" in e for e in errors)

    def test_unknown_provider(self) -> None:
        errors = validate_config(UpdaterConfig(service="guest", provider_kind="consul"))

        assert errors == ["Unsupported PROVIDER_KIND: consul. Supported: bridge, env, etcd"]

    def test_collects_all_problems(self) -> None:
        config = UpdaterConfig(
            service="guest",
            kubernetes_tls_crt_file="/crt.pem",
            retry_max_attempts=0,
            retry_initial_interval=0,
            retry_max_elapsed=-1,
            request_timeout=0,
            log_level="LOUD",
        )

        errors = validate_config(config)

        assert len(errors) == 6


class TestCreateProvider:
    def test_bridge(self) -> None:
        provider = create_provider(
            UpdaterConfig(service="guest", provider_kind="bridge", bridge_name="br0")
        )

        assert isinstance(provider, BridgeProvider)
        assert provider.name == "bridge"

    def test_env(self) -> None:
        provider = create_provider(UpdaterConfig(service="guest"))

        assert isinstance(provider, EnvProvider)

    def test_etcd(self) -> None:
        provider = create_provider(
            UpdaterConfig(
                service="guest",
                provider_kind="etcd",
                etcd_address="http://etcd:2379",
                etcd_prefix="/pods",
                etcd_kind="etcdv3",
            )
        )

        assert isinstance(provider, EtcdProvider)
        assert provider.name == "etcd"

    def test_unknown(self) -> None:
        with pytest.raises(ConfigurationError, match="consul"):
            create_provider(UpdaterConfig(service="guest", provider_kind="consul"))
