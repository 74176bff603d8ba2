import pytest

from control_plane.core.errors import (
    ClusterUnavailableError,
    ConflictError,
    NotFoundError,
    PartialApplyError,
)
from control_plane.services.reconciler import ReconciliationInterceptor
from control_plane.services.translator import ANNOTATION_IN_PROGRESS, translate

APPLY_ORDER_KEYS = ["ConfigMap", "Secret", "Deployment", "Service", "Ingress"]


def workload_mutations(cluster, verb=None):
    return [
        (v, kind) for v, kind, _, _ in cluster.mutations
        if kind != "Namespace" and (verb is None or v == verb)
    ]


class TestCreate:
    def test_project_creates_namespace(self, record_store, cluster):
        project = record_store.create_project({"name": "demo"})
        assert f"project-{project.id}" in cluster.namespaces

    def test_rollout_objects_created_in_order(self, record_store, cluster, project, rollout_data):
        rollout, report = record_store.create_rollout(project.id, rollout_data)
        assert [kind for _, kind in workload_mutations(cluster)] == APPLY_ORDER_KEYS
        assert [kind for kind, _ in report.created] == APPLY_ORDER_KEYS
        assert ("Deployment", f"rollout-{rollout.id}") in cluster.kinds(f"project-{project.id}")

    def test_cluster_failure_rolls_back_record(self, record_store, cluster, project, rollout_data):
        cluster.failures[("create", "Service")] = ClusterUnavailableError("injoignable")
        with pytest.raises(ClusterUnavailableError):
            record_store.create_rollout(project.id, rollout_data)
        assert record_store.list_rollouts(project.id) == []
        # Les objets déjà créés par la tentative sont retirés
        assert cluster.kinds(f"project-{project.id}") == []

    def test_leftover_object_is_a_conflict(self, record_store, cluster, project, rollout_data):
        cluster.failures[("create", "Deployment")] = ConflictError("existe déjà")
        with pytest.raises(ConflictError):
            record_store.create_rollout(project.id, rollout_data)
        assert record_store.list_rollouts(project.id) == []

    def test_invalid_rollout_touches_nothing(self, record_store, cluster, project, rollout_data):
        from control_plane.core.errors import ValidationError

        with pytest.raises(ValidationError):
            record_store.create_rollout(project.id, dict(rollout_data, replicas=-2))
        assert workload_mutations(cluster) == []
        assert record_store.list_rollouts(project.id) == []


class TestUpdate:
    def test_reapply_without_change_is_noop(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        before = len(cluster.mutations)

        _, report = record_store.update_rollout(rollout.id, {"replicas": 3})

        assert not report.changed
        assert len(report.unchanged) == 5
        assert len(cluster.mutations) == before

    def test_manual_edit_keeping_hash_not_repaired(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        key = ("Deployment", f"project-{project.id}", f"rollout-{rollout.id}")
        cluster.objects[key]["spec"]["replicas"] = 1

        _, report = record_store.update_rollout(rollout.id, {"name": "web-renamed"})

        assert not report.changed
        assert cluster.objects[key]["spec"]["replicas"] == 1

        _, report = record_store.update_rollout(rollout.id, {"replicas": 4})
        assert report.updated == [("Deployment", f"rollout-{rollout.id}")]
        assert cluster.objects[key]["spec"]["replicas"] == 4

    def test_tag_change_replaces_deployment_only(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        cluster.mutations.clear()

        updated, report = record_store.update_rollout(rollout.id, {"tag": "1.1.0"})

        assert report.updated == [("Deployment", f"rollout-{rollout.id}")]
        assert workload_mutations(cluster) == [("replace", "Deployment")]
        assert updated.tag == "1.1.0"

    def test_removed_ports_delete_network_objects(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)

        _, report = record_store.update_rollout(rollout.id, {"ports": []})

        assert sorted(kind for kind, _ in report.deleted) == ["Ingress", "Service"]
        remaining = [kind for kind, _ in cluster.kinds(f"project-{project.id}")]
        assert "Service" not in remaining and "Ingress" not in remaining

    def test_new_secret_creates_object(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, dict(rollout_data, secrets={}))
        _, report = record_store.update_rollout(rollout.id, {"secrets": {"API_KEY": "k"}})
        assert ("Secret", f"rollout-{rollout.id}-secrets") in report.created
        assert ("Deployment", f"rollout-{rollout.id}") in report.updated

    def test_unavailable_before_any_change_rejects_update(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        cluster.unavailable = True

        with pytest.raises(ClusterUnavailableError):
            record_store.update_rollout(rollout.id, {"tag": "2.0.0"})

        assert record_store.get_rollout(rollout.id).tag == "1.0.0"

    def test_partial_apply_is_reported_and_kept(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        cluster.failures[("replace", "Service")] = ClusterUnavailableError("coupure")

        ports = [{"name": "http", "port": 9090, "host": "web.example.com"}]
        updated, report = record_store.update_rollout(rollout.id, {"ports": ports})

        assert isinstance(report.error, PartialApplyError)
        assert [key for key, _ in report.error.failures] == [("Service", f"rollout-{rollout.id}")]
        assert ("Deployment", f"rollout-{rollout.id}") in report.updated
        assert ("Ingress", f"rollout-{rollout.id}") in report.updated
        # L'enregistrement est conservé malgré l'échec partiel
        assert record_store.get_rollout(rollout.id).ports[0]["port"] == 9090
        assert report.to_dict()["error"]["error"] == "PARTIAL_APPLY"

    def test_in_progress_marker_survives_replace(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        namespace, name = f"project-{project.id}", f"rollout-{rollout.id}"
        cluster.patch_annotations("Deployment", namespace, name, {ANNOTATION_IN_PROGRESS: "2026-10-19T10:00:00+00:00"})

        record_store.update_rollout(rollout.id, {"tag": "1.2.0"})

        live = cluster.get_object("Deployment", namespace, name)
        assert live["metadata"]["annotations"][ANNOTATION_IN_PROGRESS] == "2026-10-19T10:00:00+00:00"

    def test_image_change_clears_digest(self, record_store, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, dict(rollout_data, digest="sha256:" + "b" * 64))
        updated, _ = record_store.update_rollout(rollout.id, {"tag": "1.3.0"})
        assert updated.digest is None


class TestDelete:
    def test_rollout_objects_deleted_in_reverse_order(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        cluster.mutations.clear()

        record_store.delete_rollout(rollout.id)

        assert [kind for _, kind in workload_mutations(cluster)] == list(reversed(APPLY_ORDER_KEYS))
        assert cluster.kinds(f"project-{project.id}") == []
        with pytest.raises(NotFoundError):
            record_store.get_rollout(rollout.id)

    def test_delete_failure_keeps_record(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        cluster.failures[("delete", "Deployment")] = ClusterUnavailableError("injoignable")

        with pytest.raises(ClusterUnavailableError):
            record_store.delete_rollout(rollout.id)

        assert record_store.get_rollout(rollout.id).id == rollout.id

    def test_project_children_removed_before_namespace(self, record_store, cluster, project, rollout_data):
        first, _ = record_store.create_rollout(project.id, rollout_data)
        second, _ = record_store.create_rollout(project.id, dict(rollout_data, name="worker", ports=[]))
        cluster.mutations.clear()

        record_store.delete_project(project.id)

        verbs = [(verb, kind) for verb, kind, _, _ in cluster.mutations]
        assert verbs[-1] == ("delete", "Namespace")
        assert len(verbs) == 5 + 3 + 1
        assert f"project-{project.id}" not in cluster.namespaces
        assert record_store.list_projects() == []
        for rollout in (first, second):
            with pytest.raises(NotFoundError):
                record_store.get_rollout(rollout.id)

    def test_project_without_children(self, record_store, cluster, project):
        cluster.mutations.clear()
        record_store.delete_project(project.id)
        assert cluster.mutations == [("delete", "Namespace", "", f"project-{project.id}")]

    def test_remaining_child_blocks_project_delete(self, record_store, cluster, project, rollout_data,
                                                   monkeypatch):
        record_store.create_rollout(project.id, rollout_data)
        original = cluster.delete_object

        def sticky_delete(kind, namespace, name):
            if kind == "Deployment":
                return True
            return original(kind, namespace, name)

        monkeypatch.setattr(cluster, "delete_object", sticky_delete)

        with pytest.raises(ConflictError):
            record_store.delete_project(project.id)

        assert f"project-{project.id}" in cluster.namespaces
        assert record_store.get_project(project.id).id == project.id


class TestConsistency:
    def test_create_update_delete_leaves_cluster_clean(self, record_store, cluster, project, rollout_data):
        rollout, _ = record_store.create_rollout(project.id, rollout_data)
        record_store.update_rollout(rollout.id, {"env": {"LOG_LEVEL": "debug"}})
        record_store.update_rollout(rollout.id, {"ports": [], "secrets": {}})
        record_store.update_rollout(rollout.id, {"replicas": 1})

        stored = record_store.get_rollout(rollout.id)
        expected = {key: manifest for key, manifest in translate(stored).by_key().items()}
        namespace = f"project-{project.id}"
        assert sorted(expected) == cluster.kinds(namespace)
        for (kind, name), manifest in expected.items():
            live = cluster.get_object(kind, namespace, name)
            assert live["metadata"]["annotations"] == manifest["metadata"]["annotations"]

        record_store.delete_rollout(rollout.id)
        assert cluster.kinds(namespace) == []


class TestDispatch:
    def test_unknown_record_type(self, cluster):
        interceptor = ReconciliationInterceptor(cluster)
        with pytest.raises(TypeError):
            interceptor.on_create(object())
