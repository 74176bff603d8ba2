import hashlib
import json

import pytest
import requests

from control_plane.core.errors import ResolutionError
from control_plane.external.registry_client import RegistryClient

DIGEST = "sha256:" + "a" * 64


def response(status=200, headers=None, body=None):
    resp = requests.Response()
    resp.status_code = status
    resp.headers.update(headers or {})
    if isinstance(body, (dict, list)):
        body = json.dumps(body)
    resp._content = (body or "").encode("utf-8")
    return resp


class FakeSession:
    """Session requests rejouant des réponses préparées"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def request(self, method, url, headers=None, timeout=None, auth=None):
        self.requests.append((method, url, dict(headers or {})))
        return self._next()

    def get(self, url, params=None, auth=None, timeout=None):
        self.requests.append(("TOKEN", url, dict(params or {})))
        return self._next()


class TestImageNames:
    @pytest.mark.parametrize("image, expected", [
        ("nginx", ("registry-1.docker.io", "library/nginx")),
        ("bitnami/redis", ("registry-1.docker.io", "bitnami/redis")),
        ("docker.io/nginx", ("registry-1.docker.io", "library/nginx")),
        ("ghcr.io/org/app", ("ghcr.io", "org/app")),
        ("localhost:5000/app", ("localhost:5000", "app")),
    ])
    def test_split_image(self, image, expected):
        assert RegistryClient.split_image(image) == expected


class TestDigest:
    def test_digest_from_head(self):
        session = FakeSession(response(headers={"Docker-Content-Digest": DIGEST}))
        client = RegistryClient(session=session)

        assert client.get_digest("ghcr.io/org/app", "1.0.0") == DIGEST
        method, url, headers = session.requests[0]
        assert (method, url) == ("HEAD", "https://ghcr.io/v2/org/app/manifests/1.0.0")
        assert "application/vnd.oci.image.index.v1+json" in headers["Accept"]

    def test_bearer_challenge_and_token_cache(self):
        challenge = 'Bearer realm="https://auth.example.com/token",service="registry",scope="repository:org/app:pull"'
        session = FakeSession(
            response(401, headers={"WWW-Authenticate": challenge}),
            response(body={"token": "t0k"}),
            response(headers={"Docker-Content-Digest": DIGEST}),
            response(headers={"Docker-Content-Digest": DIGEST}),
        )
        client = RegistryClient(session=session)

        assert client.get_digest("ghcr.io/org/app", "1.0.0") == DIGEST
        assert client.get_digest("ghcr.io/org/app", "1.0.1") == DIGEST

        token_request = session.requests[1]
        assert token_request[0] == "TOKEN"
        assert token_request[2] == {"service": "registry", "scope": "repository:org/app:pull"}
        assert session.requests[2][2]["Authorization"] == "Bearer t0k"
        # Le token en cache est réutilisé sans nouveau challenge
        assert session.requests[3][2]["Authorization"] == "Bearer t0k"
        assert len(session.requests) == 4

    def test_fallback_to_manifest_body(self):
        manifest = '{"schemaVersion":2}'
        session = FakeSession(response(200), response(200, body=manifest))
        client = RegistryClient(session=session)

        expected = "sha256:" + hashlib.sha256(manifest.encode("utf-8")).hexdigest()
        assert client.get_digest("ghcr.io/org/app", "1.0.0") == expected

    def test_unknown_tag(self):
        session = FakeSession(response(404), response(404))
        with pytest.raises(ResolutionError):
            RegistryClient(session=session).get_digest("ghcr.io/org/app", "nope")

    def test_unreachable_registry(self):
        session = FakeSession(requests.ConnectionError("refused"))
        with pytest.raises(ResolutionError):
            RegistryClient(session=session).get_digest("ghcr.io/org/app", "1.0.0")


class TestTags:
    def test_paginated_listing(self):
        session = FakeSession(
            response(body={"tags": ["1.0.0", "1.1.0"]},
                     headers={"Link": '</v2/org/app/tags/list?n=1000&last=1.1.0>; rel="next"'}),
            response(body={"tags": ["2.0.0"]}),
        )
        client = RegistryClient(session=session)

        assert client.get_image_tags("ghcr.io/org/app") == ["1.0.0", "1.1.0", "2.0.0"]
        assert session.requests[1][1] == "https://ghcr.io/v2/org/app/tags/list?n=1000&last=1.1.0"

    def test_unknown_repository(self):
        session = FakeSession(response(404))
        with pytest.raises(ResolutionError):
            RegistryClient(session=session).get_image_tags("ghcr.io/org/missing")
