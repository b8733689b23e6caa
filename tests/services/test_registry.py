"""
Tests for image references and registry pull secrets.
"""

import base64
import json

import pytest
from unittest.mock import AsyncMock, Mock

from kubernetes.client.rest import ApiException

from devspace.errors import ConfigError, DeploymentError
from devspace.schemas import Config, ImageConfig
from devspace.services.registry import get_image_url, get_pull_secret_names, init_registries


def make_config(registries=None) -> Config:
    return Config.model_validate({
        "devSpace": {"release": {"namespace": "dev"}},
        "registries": registries or {
            "hub": {"url": "https://hub.example.com/v2", "auth": {"username": "u", "password": "p"}},
            "public": {"url": "quay.io"},
        },
    })


@pytest.mark.unit
class TestImageUrl:

    def test_registry_host_is_prefixed(self):
        image = ImageConfig(name="web", registry="hub", tag="v1")
        assert get_image_url(make_config(), image) == "hub.example.com/web:v1"

    def test_generated_tag_wins_over_config_tag(self):
        image = ImageConfig(name="web", registry="hub", tag="v1")
        assert get_image_url(make_config(), image, {"web": "abc"}) == "hub.example.com/web:abc"

    def test_defaults(self):
        assert get_image_url(make_config(), ImageConfig(name="nginx")) == "nginx:latest"
        assert get_image_url(make_config(), ImageConfig(name="nginx"), include_tag=False) == "nginx"

    def test_unknown_registry(self):
        with pytest.raises(ConfigError):
            get_image_url(make_config(), ImageConfig(name="web", registry="missing"))

    def test_pull_secret_names(self):
        assert get_pull_secret_names(make_config()) == [
            "devspace-auth-hub-example-com",
            "devspace-auth-quay-io",
        ]


@pytest.mark.unit
class TestInitRegistries:

    @pytest.mark.asyncio
    async def test_secrets_only_for_registries_with_password(self):
        kube = Mock()
        kube.apply_secret = AsyncMock()

        created = await init_registries(kube, make_config())

        assert created == ["devspace-auth-hub-example-com"]
        secret, namespace = kube.apply_secret.call_args.args
        assert namespace == "dev"
        assert secret.type == "kubernetes.io/dockerconfigjson"
        docker_config = json.loads(base64.b64decode(secret.data[".dockerconfigjson"]))
        auth = docker_config["auths"]["hub.example.com"]
        assert auth["username"] == "u"
        assert base64.b64decode(auth["auth"]).decode() == "u:p"

    @pytest.mark.asyncio
    async def test_credentials_without_url(self):
        kube = Mock()
        kube.apply_secret = AsyncMock()
        config = make_config({"private": {"auth": {"password": "secret"}}})

        with pytest.raises(ConfigError):
            await init_registries(kube, config)
        kube.apply_secret.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_secret_api_failure_is_deployment_error(self):
        kube = Mock()
        kube.apply_secret = AsyncMock(side_effect=ApiException(status=403, reason="Forbidden"))

        with pytest.raises(DeploymentError) as exc_info:
            await init_registries(kube, make_config())

        assert "hub" in str(exc_info.value)
        assert "Forbidden" in str(exc_info.value)
