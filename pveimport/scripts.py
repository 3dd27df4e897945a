"""Render PVEScriptsLocal install scripts from manifests.

A script is assembled from named sections (header, dependencies, clone,
build, custom_install, service, footer) so callers and tests can inspect
pieces before the flattened text is written to disk. Rendering is pure:
identical manifests produce identical scripts.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, assert_never

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from pveimport.manifest import ProjectType, ScriptManifest

GO_VERSION = "go1.25.3"
NODE_MAJOR = 24
SERVICE_RESTART_DELAY = 10
PREVIEW_LENGTH = 500

InitSystem = Literal["systemd", "openrc"]


def _single_line(value: str) -> str:
    return " ".join(str(value).split())


def _shell_dq(value: str) -> str:
    """Escape text for use inside a double-quoted shell string."""
    escaped = str(value)
    for char in ("\\", '"', "$", "`"):
        escaped = escaped.replace(char, f"\\{char}")
    return escaped


_TEMPLATES = Environment(
    loader=FileSystemLoader(str(Path(__file__).resolve().parent / "templates")),
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)
_TEMPLATES.filters["single_line"] = _single_line
_TEMPLATES.filters["shell_dq"] = _shell_dq


@dataclass(slots=True, frozen=True)
class ScriptTarget:
    """Package manager and init system of the container OS."""

    os: str
    install: str
    init: InitSystem

    @property
    def is_alpine(self) -> bool:
        return self.init == "openrc"


DEBIAN_TARGET = ScriptTarget(os="debian", install="$STD apt-get install -y", init="systemd")
ALPINE_TARGET = ScriptTarget(os="alpine", install="$STD apk add --no-cache", init="openrc")


def target_for(os_name: str | None) -> ScriptTarget:
    if (os_name or "").lower() == "alpine":
        return ALPINE_TARGET
    return DEBIAN_TARGET


@dataclass(slots=True, frozen=True)
class ScriptSection:
    name: str
    body: str


@dataclass(slots=True)
class InstallScript:
    """Ordered script sections; ``text`` is the file content."""

    sections: list[ScriptSection]

    @property
    def names(self) -> list[str]:
        return [section.name for section in self.sections]

    def section(self, name: str) -> ScriptSection | None:
        return next((section for section in self.sections if section.name == name), None)

    @property
    def text(self) -> str:
        return "\n\n".join(section.body.strip("\n") for section in self.sections) + "\n"

    def preview(self, length: int = PREVIEW_LENGTH) -> str:
        return self.text[:length]


def _block(info: str, lines: list[str], done: str) -> str:
    return "\n".join([f'msg_info "{info}"', *lines, f'msg_ok "{done}"'])


def _header(manifest: ScriptManifest, repository_url: str) -> str:
    return "\n".join(
        [
            "#!/usr/bin/env bash",
            "",
            f"# Auto-generated installation script for {_single_line(manifest.name)}",
            f"# Imported from: {repository_url}",
            "",
            'source /dev/stdin <<< "$FUNCTIONS_FILE_PATH"',
            "color",
            "verb_ip6",
            "catch_errors",
            "setting_up_container",
            "network_check",
            "update_os",
        ]
    )


def _dependencies(project_type: ProjectType, target: ScriptTarget) -> str:
    base = ["curl", "git"] if not target.is_alpine else ["curl", "git", "bash", "ca-certificates"]
    blocks = [
        _block(
            "Installing base dependencies",
            [f"{target.install} {' '.join(base)}"],
            "Base dependencies installed",
        )
    ]
    match project_type:
        case ProjectType.NODEJS:
            if target.is_alpine:
                lines = [f"{target.install} nodejs npm"]
            else:
                lines = [
                    f"curl -fsSL https://deb.nodesource.com/setup_{NODE_MAJOR}.x | bash -",
                    f"{target.install} nodejs",
                ]
            blocks.append(_block("Installing Node.js", lines, "Node.js installed"))
        case ProjectType.PYTHON:
            if target.is_alpine:
                packages = "python3 py3-pip py3-virtualenv"
            else:
                packages = "python3 python3-pip python3-venv"
            blocks.append(
                _block("Installing Python", [f"{target.install} {packages}"], "Python installed")
            )
        case ProjectType.DOCKER:
            if target.is_alpine:
                lines = [
                    f"{target.install} docker docker-cli-compose",
                    "rc-update add docker boot",
                    "service docker start",
                ]
            else:
                lines = [
                    f"{target.install} ca-certificates gnupg",
                    "install -m 0755 -d /etc/apt/keyrings",
                    'DISTRO_ID="$(. /etc/os-release && echo "$ID")"',
                    'curl -fsSL "https://download.docker.com/linux/${DISTRO_ID}/gpg" '
                    "| gpg --dearmor -o /etc/apt/keyrings/docker.gpg",
                    "chmod a+r /etc/apt/keyrings/docker.gpg",
                    'echo "deb [arch=$(dpkg --print-architecture) '
                    "signed-by=/etc/apt/keyrings/docker.gpg] "
                    "https://download.docker.com/linux/${DISTRO_ID} "
                    '$(. /etc/os-release && echo "$VERSION_CODENAME") stable" '
                    "> /etc/apt/sources.list.d/docker.list",
                    "$STD apt-get update",
                    f"{target.install} docker-ce docker-ce-cli containerd.io "
                    "docker-buildx-plugin docker-compose-plugin",
                ]
            blocks.append(_block("Installing Docker", lines, "Docker installed"))
        case ProjectType.GOLANG:
            if target.is_alpine:
                lines = [f"{target.install} go"]
            else:
                lines = [
                    f'GO_VERSION="{GO_VERSION}"',
                    'GO_ARCH="$(dpkg --print-architecture)"',
                    "curl -fsSL -o /tmp/go.tar.gz "
                    '"https://go.dev/dl/${GO_VERSION}.linux-${GO_ARCH}.tar.gz"',
                    "rm -rf /usr/local/go",
                    "tar -C /usr/local -xzf /tmp/go.tar.gz",
                    "rm -f /tmp/go.tar.gz",
                    "export PATH=$PATH:/usr/local/go/bin",
                ]
            blocks.append(_block("Installing Go", lines, "Go installed"))
        case ProjectType.RUST:
            if target.is_alpine:
                lines = [f"{target.install} build-base rust cargo"]
            else:
                lines = [
                    f"{target.install} build-essential pkg-config libssl-dev",
                    "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs "
                    "| sh -s -- -y --profile minimal",
                    'source "$HOME/.cargo/env"',
                ]
            blocks.append(_block("Installing Rust toolchain", lines, "Rust installed"))
        case ProjectType.GENERIC:
            blocks.append(
                _block(
                    "Installing dependencies",
                    [f"{target.install} wget"],
                    "Dependencies installed",
                )
            )
        case _:
            assert_never(project_type)
    return "\n\n".join(blocks)


def _clone(slug: str, branch: str, clone_url: str) -> str:
    return _block(
        "Cloning repository",
        [
            "mkdir -p /opt",
            "cd /opt",
            f"git clone -b {shlex.quote(branch)} {shlex.quote(clone_url)} {shlex.quote(slug)}",
            f'cd "/opt/{slug}"',
        ],
        "Repository cloned",
    )


def _build(project_type: ProjectType, slug: str) -> str | None:
    match project_type:
        case ProjectType.NODEJS:
            return _block(
                "Installing Node.js dependencies",
                [
                    "$STD npm install",
                    "if grep -q '\"build\"' package.json 2>/dev/null; then",
                    '    msg_info "Building application"',
                    "    $STD npm run build",
                    "fi",
                ],
                "Application built",
            )
        case ProjectType.PYTHON:
            return _block(
                "Setting up Python environment",
                [
                    "python3 -m venv venv",
                    "source venv/bin/activate",
                    'if [ -f "requirements.txt" ]; then',
                    "    $STD pip install -r requirements.txt",
                    "fi",
                    'if [ -f "pyproject.toml" ]; then',
                    "    $STD pip install .",
                    "fi",
                ],
                "Python environment configured",
            )
        case ProjectType.DOCKER:
            return _block(
                "Building containers",
                [
                    'if [ -f "docker-compose.yml" ]; then',
                    "    $STD docker compose build",
                    "    $STD docker compose up -d",
                    "else",
                    f"    $STD docker build -t {slug} .",
                    f"    $STD docker run -d --name {slug} --restart unless-stopped {slug}",
                    "fi",
                ],
                "Containers running",
            )
        case ProjectType.GOLANG:
            return _block(
                "Building Go application",
                ["$STD go build -o app ."],
                "Application built",
            )
        case ProjectType.RUST:
            return _block(
                "Building Rust application",
                ["$STD cargo build --release"],
                "Application built",
            )
        case ProjectType.GENERIC:
            return None
        case _:
            assert_never(project_type)


def _custom_install(install_script: str) -> str:
    quoted = shlex.quote(install_script)
    return _block(
        "Running custom install script",
        [
            f"if [ -f {quoted} ]; then",
            f"    chmod +x {quoted}",
            f"    $STD bash {quoted}",
            "fi",
        ],
        "Custom installation complete",
    )


def service_command(project_type: ProjectType, slug: str) -> tuple[str, str] | None:
    """Return ``(command, arguments)`` for long-running project types."""
    match project_type:
        case ProjectType.NODEJS:
            return "/usr/bin/npm", "start"
        case ProjectType.PYTHON:
            return f"/opt/{slug}/venv/bin/python", "-m app"
        case ProjectType.GOLANG:
            return f"/opt/{slug}/app", ""
        case ProjectType.DOCKER | ProjectType.RUST | ProjectType.GENERIC:
            return None
        case _:
            assert_never(project_type)


def _service(manifest: ScriptManifest, target: ScriptTarget) -> str | None:
    command = service_command(manifest.project_type, manifest.slug)
    if command is None:
        return None
    executable, arguments = command
    context = {
        "slug": manifest.slug,
        "description": manifest.name,
        "restart_delay": SERVICE_RESTART_DELAY,
    }
    if target.init == "openrc":
        template = _TEMPLATES.get_template("openrc.initd.j2")
        return template.render(command=executable, command_args=arguments, **context)
    template = _TEMPLATES.get_template("systemd.service.j2")
    exec_start = f"{executable} {arguments}".strip()
    return template.render(exec_start=exec_start, **context)


def _footer(target: ScriptTarget) -> str:
    if target.is_alpine:
        cleanup = ["rm -rf /var/cache/apk/*"]
    else:
        cleanup = ["$STD apt-get -y autoremove", "$STD apt-get -y autoclean"]
    return "motd_ssh\ncustomize\n\n" + _block("Cleaning up", cleanup, "Cleaned")


def render_install_script(
    manifest: ScriptManifest,
    *,
    clone_url: str | None = None,
) -> InstallScript:
    """Render the install script for a GitHub-sourced manifest.

    ``clone_url`` replaces the public clone URL, e.g. with embedded
    credentials for private repositories.
    """
    source = manifest.source
    if source is None or source.type != "github" or not source.owner or not source.repo:
        raise ValueError(f"manifest '{manifest.slug}' has no GitHub source to build from")
    repository_url = f"https://github.com/{source.owner}/{source.repo}"
    branch = source.branch or "main"
    project_type = manifest.project_type
    target = target_for(manifest.resources.os)

    sections = [
        ScriptSection("header", _header(manifest, repository_url)),
        ScriptSection("dependencies", _dependencies(project_type, target)),
        ScriptSection(
            "clone",
            _clone(manifest.slug, branch, clone_url or f"{repository_url}.git"),
        ),
    ]
    build = _build(project_type, manifest.slug)
    if build is not None:
        sections.append(ScriptSection("build", build))
    if source.install_script:
        sections.append(ScriptSection("custom_install", _custom_install(source.install_script)))
    service = _service(manifest, target)
    if service is not None:
        sections.append(ScriptSection("service", service))
    sections.append(ScriptSection("footer", _footer(target)))
    return InstallScript(sections=sections)
