"""Runner bootstrap payload.

Renders the cloud-init document a Linux runner VM executes on first boot:
it downloads the runner tools, registers the runner against the repo URL
and reports progress to the host's callback URL.  cloud-init accepts JSON
as YAML, so the document is emitted with :mod:`json`.
"""

from __future__ import annotations

import base64
import json
import shlex
from string import Template

from garm_azure.base.exceptions import SpecValidationError
from garm_azure.base.params import BootstrapInstance, RunnerApplicationDownload

RUNNER_HOME = "/home/runner"
INSTALL_SCRIPT_PATH = "/usr/local/share/garm/install_runner.sh"
CA_BUNDLE_PATH = "/usr/local/share/ca-certificates/garm-ca.crt"

# Runner tools name CPU architectures differently.
_TOOLS_ARCH = {"amd64": "x64", "arm64": "arm64", "arm": "arm", "i386": "x86"}

_INSTALL_TEMPLATE = Template(
    """#!/bin/bash
set -e
set -o pipefail

CALLBACK_URL=$callback_url
METADATA_URL=$metadata_url
BEARER_TOKEN=$bearer_token
RUNNER_NAME=$runner_name
RUNNER_HOME=$runner_home

function call() {
    PAYLOAD="$$1"
    curl --retry 5 --retry-delay 5 --retry-connrefused --fail -s -X POST \\
        -d "$${PAYLOAD}" -H 'Accept: application/json' \\
        -H "Authorization: Bearer $${BEARER_TOKEN}" "$${CALLBACK_URL}" || echo "failed to call home"
}

function sendStatus() {
    call "{\\"status\\": \\"installing\\", \\"message\\": \\"$$1\\"}"
}

function fail() {
    call "{\\"status\\": \\"failed\\", \\"message\\": \\"$$1\\"}"
    exit 1
}

function getMetadata() {
    curl --retry 5 --retry-delay 5 --retry-connrefused --fail -s \\
        -H 'Accept: application/json' -H "Authorization: Bearer $${BEARER_TOKEN}" \\
        "$${METADATA_URL}/$$1"
}

sendStatus "downloading tools from $download_url"
TEMP_TOKEN=$temp_token
if [ -n "$${TEMP_TOKEN}" ]; then
    curl --retry 5 --retry-delay 5 --retry-connrefused --fail -L \\
        -H "Authorization: Bearer $${TEMP_TOKEN}" -o "/home/runner/$filename" $download_url || fail "failed to download tools"
else
    curl --retry 5 --retry-delay 5 --retry-connrefused --fail -L \\
        -o "/home/runner/$filename" $download_url || fail "failed to download tools"
fi

CHECKSUM=$checksum
if [ -n "$${CHECKSUM}" ]; then
    echo "$${CHECKSUM}  /home/runner/$filename" | sha256sum -c - || fail "tools checksum mismatch"
fi

mkdir -p "$${RUNNER_HOME}/actions-runner"
sendStatus "extracting runner"
tar xf "/home/runner/$filename" -C "$${RUNNER_HOME}/actions-runner" || fail "failed to extract runner"
chown -R runner:runner "$${RUNNER_HOME}/actions-runner"
cd "$${RUNNER_HOME}/actions-runner"

sendStatus "installing dependencies"
./bin/installdependencies.sh || fail "failed to install dependencies"

$configure

sendStatus "installing runner service"
./svc.sh install runner || fail "failed to install service"
./svc.sh start || fail "failed to start service"

AGENT_ID=$$(grep -oE '"[aA]gent[iI][dD]": *[0-9]+' .runner | grep -oE '[0-9]+' || true)
call "{\\"status\\": \\"idle\\", \\"message\\": \\"runner successfully installed\\", \\"agent_id\\": $${AGENT_ID:-0}}"
"""
)

_CONFIGURE_JIT = """sendStatus "fetching runner credentials"
getMetadata "credentials/runner" | base64 -d > .runner || fail "failed to get runner file"
getMetadata "credentials/credentials" | base64 -d > .credentials || fail "failed to get credentials file"
getMetadata "credentials/credentials_rsaparams" | base64 -d > .credentials_rsaparams || fail "failed to get rsa params"
chown runner:runner .runner .credentials .credentials_rsaparams
chmod 400 .credentials .credentials_rsaparams"""

_CONFIGURE_TOKEN = Template(
    """sendStatus "configuring runner"
REG_TOKEN=$$(getMetadata "runner-registration-token/") || fail "failed to get registration token"
sudo -u runner -- ./config.sh --unattended --url $repo_url --token "$${REG_TOKEN}" \\
    --name "$${RUNNER_NAME}" --labels $labels $runner_group --ephemeral || fail "failed to configure runner"
"""
)


def select_tools(bootstrap: BootstrapInstance) -> RunnerApplicationDownload:
    """Pick the runner tools archive matching the instance's OS and arch.

    Raises:
        SpecValidationError: If no tools match.
    """
    want_arch = _TOOLS_ARCH.get(bootstrap.arch, bootstrap.arch)
    for tool in bootstrap.tools:
        if tool.os == bootstrap.os_type and tool.architecture == want_arch:
            if not tool.download_url or not tool.filename:
                break
            return tool
    raise SpecValidationError(
        f"failed to find tools for OS {bootstrap.os_type} and arch {bootstrap.arch}"
    )


def render_install_script(bootstrap: BootstrapInstance) -> str:
    """Render the bash script that installs and registers the runner."""
    tools = select_tools(bootstrap)
    if bootstrap.jit_config_enabled:
        configure = _CONFIGURE_JIT
    else:
        group = (
            f"--runnergroup {shlex.quote(bootstrap.github_runner_group)}"
            if bootstrap.github_runner_group
            else ""
        )
        configure = _CONFIGURE_TOKEN.substitute(
            repo_url=shlex.quote(bootstrap.repo_url),
            labels=shlex.quote(",".join(bootstrap.labels)),
            runner_group=group,
        )
    return _INSTALL_TEMPLATE.substitute(
        callback_url=shlex.quote(bootstrap.callback_url),
        metadata_url=shlex.quote(bootstrap.metadata_url),
        bearer_token=shlex.quote(bootstrap.instance_token),
        runner_name=shlex.quote(bootstrap.name),
        runner_home=shlex.quote(RUNNER_HOME),
        download_url=shlex.quote(tools.download_url or ""),
        filename=tools.filename,
        temp_token=shlex.quote(tools.temp_download_token or ""),
        checksum=shlex.quote(tools.sha256_checksum or ""),
        configure=configure,
    )


def render_userdata(bootstrap: BootstrapInstance) -> str:
    """Render the ``#cloud-config`` document for a Linux runner.

    Raises:
        SpecValidationError: For non-Linux instances or missing tools.
    """
    if bootstrap.os_type != "linux":
        raise SpecValidationError(
            f"unsupported OS type {bootstrap.os_type} (supported: linux)"
        )
    script = render_install_script(bootstrap)
    write_files = [
        {
            "path": INSTALL_SCRIPT_PATH,
            "permissions": "0755",
            "owner": "root:root",
            "encoding": "b64",
            "content": base64.b64encode(script.encode()).decode(),
        }
    ]
    runcmd: list[list[str]] = []
    if bootstrap.ca_cert_bundle:
        write_files.append(
            {
                "path": CA_BUNDLE_PATH,
                "permissions": "0644",
                "owner": "root:root",
                "encoding": "b64",
                "content": bootstrap.ca_cert_bundle,
            }
        )
        runcmd.append(["update-ca-certificates"])
    runcmd.append(["/bin/bash", INSTALL_SCRIPT_PATH])

    document = {
        "package_upgrade": False,
        "packages": ["curl", "tar"],
        "users": [
            "default",
            {
                "name": "runner",
                "shell": "/bin/bash",
                "homedir": RUNNER_HOME,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "ssh_authorized_keys": bootstrap.ssh_keys,
            },
        ],
        "write_files": write_files,
        "runcmd": runcmd,
    }
    return "#cloud-config\n" + json.dumps(document, indent=2)
