import base64

import pytest

from control_plane.core.errors import ValidationError
from control_plane.models import Rollout
from control_plane.services.translator import (
    ANNOTATION_CONFIG_HASH,
    ANNOTATION_SPEC_HASH,
    LABEL_PROJECT,
    LABEL_ROLLOUT,
    label_selector,
    managed_keys,
    spec_hash,
    translate,
)
from tests.conftest import digest


def make_rollout(**overrides) -> Rollout:
    values = {
        "id": 7,
        "project_id": 3,
        "name": "web",
        "image": "nginx",
        "tag": "1.25",
        "replicas": 2,
        "env": {"MODE": "prod", "WORKERS": 4, "DEBUG": False},
        "secrets": {"TOKEN": "abc"},
        "ports": [{"name": "http", "port": 80, "host": "web.example.com", "path": "/"}],
        "resources": {"cpu_request": "100m", "memory_limit": "128Mi"},
    }
    values.update(overrides)
    return Rollout(**values)


class TestTranslation:
    def test_same_rollout_gives_identical_manifests(self):
        assert translate(make_rollout()) == translate(make_rollout())

    def test_objects_in_apply_order(self):
        desired = translate(make_rollout())
        assert desired.namespace == "project-3"
        assert desired.keys() == [
            ("ConfigMap", "rollout-7-env"),
            ("Secret", "rollout-7-secrets"),
            ("Deployment", "rollout-7"),
            ("Service", "rollout-7"),
            ("Ingress", "rollout-7"),
        ]

    def test_optional_objects_omitted(self):
        desired = translate(make_rollout(env={}, secrets={}, ports=[]))
        assert desired.keys() == [("Deployment", "rollout-7")]

    def test_every_manifest_carries_its_hash(self):
        for manifest in translate(make_rollout()).objects:
            assert manifest["metadata"]["annotations"][ANNOTATION_SPEC_HASH] == spec_hash(manifest)

    def test_hash_changes_with_content(self):
        before = translate(make_rollout()).by_key()[("Deployment", "rollout-7")]
        after = translate(make_rollout(tag="1.26")).by_key()[("Deployment", "rollout-7")]
        assert before["metadata"]["annotations"][ANNOTATION_SPEC_HASH] != \
            after["metadata"]["annotations"][ANNOTATION_SPEC_HASH]

    def test_deployment_container(self):
        deployment = translate(make_rollout(digest=digest("a"))).by_key()[("Deployment", "rollout-7")]
        container = deployment["spec"]["template"]["spec"]["containers"][0]
        assert container["image"] == f"nginx:1.25@{digest('a')}"
        assert container["imagePullPolicy"] == "IfNotPresent"
        assert {"name": "PROJECT_ID", "value": "3"} in container["env"]
        assert {"name": "ROLLOUT_ID", "value": "7"} in container["env"]
        assert container["envFrom"] == [
            {"configMapRef": {"name": "rollout-7-env"}},
            {"secretRef": {"name": "rollout-7-secrets"}},
        ]
        assert container["resources"] == {"requests": {"cpu": "100m"}, "limits": {"memory": "128Mi"}}
        assert deployment["spec"]["replicas"] == 2
        assert deployment["spec"]["selector"]["matchLabels"] == {LABEL_PROJECT: "3", LABEL_ROLLOUT: "7"}

    def test_mutable_tag_always_pulled(self):
        deployment = translate(make_rollout()).by_key()[("Deployment", "rollout-7")]
        assert deployment["spec"]["template"]["spec"]["containers"][0]["imagePullPolicy"] == "Always"

    def test_config_change_restarts_pods(self):
        def config_hash(rollout):
            deployment = translate(rollout).by_key()[("Deployment", "rollout-7")]
            return deployment["spec"]["template"]["metadata"]["annotations"][ANNOTATION_CONFIG_HASH]

        assert config_hash(make_rollout()) != config_hash(make_rollout(secrets={"TOKEN": "other"}))

    def test_env_values_stringified(self):
        config_map = translate(make_rollout()).by_key()[("ConfigMap", "rollout-7-env")]
        assert config_map["data"] == {"DEBUG": "false", "MODE": "prod", "WORKERS": "4"}

    def test_secret_base64(self):
        secret = translate(make_rollout()).by_key()[("Secret", "rollout-7-secrets")]
        assert base64.b64decode(secret["data"]["TOKEN"]) == b"abc"

    def test_ingress_rules(self):
        ports = [
            {"name": "api", "port": 9000, "host": "b.example.com", "path": "/api"},
            {"name": "http", "port": 80, "host": "a.example.com"},
            {"name": "metrics", "port": 9100},
        ]
        desired = translate(make_rollout(ports=ports)).by_key()
        rules = desired[("Ingress", "rollout-7")]["spec"]["rules"]
        assert [rule["host"] for rule in rules] == ["a.example.com", "b.example.com"]
        assert rules[0]["http"]["paths"][0]["path"] == "/"
        assert rules[1]["http"]["paths"][0]["backend"]["service"]["port"]["number"] == 9000
        assert len(desired[("Service", "rollout-7")]["spec"]["ports"]) == 3

    def test_managed_keys_cover_translation(self):
        assert set(translate(make_rollout()).keys()) <= set(managed_keys(7))

    def test_label_selector(self):
        assert label_selector(3, 7) == f"{LABEL_PROJECT}=3,{LABEL_ROLLOUT}=7"


class TestValidation:
    @pytest.mark.parametrize("overrides, field", [
        ({"image": "Nginx"}, "image"),
        ({"image": "nginx:1.25"}, "image"),
        ({"tag": "bad tag"}, "tag"),
        ({"digest": "sha256:1234"}, "digest"),
        ({"replicas": -1}, "replicas"),
        ({"env": {"1BAD": "x"}}, "env.1BAD"),
        ({"env": {"PROJECT_ID": "x"}}, "env.PROJECT_ID"),
        ({"env": {"NESTED": {"a": 1}}}, "env.NESTED"),
        ({"secrets": {"MODE": "x"}}, "secrets.MODE"),
        ({"ports": [{"port": 70000}]}, "ports[0].port"),
        ({"ports": [{"port": 80}, {"port": 80}]}, "ports[1].name"),
        ({"ports": [{"port": 80, "host": "Bad_Host"}]}, "ports[0].host"),
        ({"ports": [{"port": 80, "host": "a.example.com", "path": "api"}]}, "ports[0].path"),
        ({"resources": {"cpu_request": "lots"}}, "resources.cpu_request"),
        ({"resources": {"memory_request": "1Gi", "memory_limit": "512Mi"}}, "resources.memory_limit"),
        ({"resources": {"gpu": "1"}}, "resources.gpu"),
    ])
    def test_invalid_rollout_rejected(self, overrides, field):
        with pytest.raises(ValidationError) as exc:
            translate(make_rollout(**overrides))
        assert exc.value.field == field

    def test_unsaved_rollout_rejected(self):
        with pytest.raises(ValidationError):
            translate(make_rollout(id=None))
