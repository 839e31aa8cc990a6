import pytest
from google.api_core import exceptions

from talos_gcp.credentials import SecretStore, get_credentials, localize_kubeconfig, run_local
from talos_gcp.errors import ConfigurationError, ProviderError

KUBECONFIG = """apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: LS0t
    server: https://10.100.0.2:6443
  name: a
"""


def test_localize_kubeconfig_points_at_the_tunnel(tmp_path):
    source = tmp_path / "kubeconfig"
    source.write_text(KUBECONFIG)

    localize_kubeconfig(source, tmp_path / "kubeconfig.local")

    text = (tmp_path / "kubeconfig.local").read_text()
    assert "server: https://127.0.0.1:64430" in text
    assert "10.100.0.2" not in text
    assert "certificate-authority-data: LS0t" in text


def test_run_local_requires_the_tool(mocker):
    mocker.patch("shutil.which", return_value=None)

    with pytest.raises(ConfigurationError, match="talosctl not found"):
        run_local(["talosctl", "version"])


def test_run_local_failure(mocker):
    mocker.patch("shutil.which", return_value="/usr/local/bin/talosctl")
    mock_run = mocker.patch("subprocess.run")
    mock_run.return_value.returncode = 1
    mock_run.return_value.stderr = "invalid secrets bundle\n"

    with pytest.raises(ProviderError, match="invalid secrets bundle"):
        run_local(["talosctl", "gen", "config"])


def test_secret_store_paths(mocker, config, tmp_path):
    mock_get = mocker.patch("talos_gcp.credentials.get_storage_client")
    blob = mock_get.return_value.bucket.return_value.blob.return_value
    local = tmp_path / "secrets.yaml"
    local.write_text("bundle")

    assert SecretStore(config).download(local) is True

    mock_get.return_value.bucket.assert_called_with("test-project-a-talos")
    mock_get.return_value.bucket.return_value.blob.assert_called_with("a/secrets.yaml")
    blob.download_to_filename.assert_called_once_with(str(local))


def test_secret_store_download_missing(mocker, config, tmp_path):
    mock_get = mocker.patch("talos_gcp.credentials.get_storage_client")
    blob = mock_get.return_value.bucket.return_value.blob.return_value
    local = tmp_path / "secrets.yaml"

    def partial(path):
        local.touch()
        raise exceptions.NotFound("no such object")

    blob.download_to_filename.side_effect = partial

    assert SecretStore(config).download(local) is False
    assert not local.exists()


def test_get_credentials_requires_stored_secrets(mocker, config):
    mocker.patch("talos_gcp.credentials.SecretStore.download", return_value=False)
    run = mocker.patch("talos_gcp.credentials.run_local")

    with pytest.raises(ProviderError, match="No secrets found"):
        get_credentials(config, "10.100.0.2")
    run.assert_not_called()
