# backend/vibespace/services/tech_stacks.py
"""
Tech stack catalog.

Installable software packages that can be baked into templates or
installed per workspace. Scripts run as root inside the container; the
unprivileged login user is taken from ``$WORKSPACE_USER``.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class TechStackCategory(str, Enum):
    RUNTIME = "runtime"
    AI_ASSISTANT = "ai-assistant"
    NETWORK = "network"


@dataclass(frozen=True)
class TechStack:
    id: str
    name: str
    description: str
    category: TechStackCategory
    install_script: str
    verify_command: str
    requires_nesting: bool = False
    dependencies: Tuple[str, ...] = ()


class TechStackCycleError(Exception):
    """The catalog's dependency graph contains a cycle."""
    pass


SCRIPT_HEADER = 'WORKSPACE_USER="${WORKSPACE_USER:-vibe}"'


def _npm_user_install(package: str, binary: str, label: str) -> str:
    return f"""
# Install {label} for the workspace user (user-local npm prefix)
su - "$WORKSPACE_USER" -c "mkdir -p ~/.npm-global"
su - "$WORKSPACE_USER" -c "npm config set prefix ~/.npm-global"
su - "$WORKSPACE_USER" -c "grep -q 'npm-global' ~/.bashrc || echo 'export PATH=~/.npm-global/bin:\\$PATH' >> ~/.bashrc"
su - "$WORKSPACE_USER" -c "export PATH=~/.npm-global/bin:\\$PATH && npm install -g {package}"
su - "$WORKSPACE_USER" -c "export PATH=~/.npm-global/bin:\\$PATH && {binary} --version" || echo "{label} installed"
""".strip()


def _npm_user_verify(binary: str) -> str:
    return f'su - "$WORKSPACE_USER" -c "export PATH=~/.npm-global/bin:\\$PATH && which {binary}"'


TECH_STACKS: Tuple[TechStack, ...] = (
    # Network
    TechStack(
        id="tailscale-vpn",
        name="Tailscale VPN",
        description="Secure mesh VPN for peer-to-peer connectivity",
        category=TechStackCategory.NETWORK,
        install_script="""
curl -fsSL https://tailscale.com/install.sh | sh
systemctl enable tailscaled
systemctl start tailscaled
tailscale set --operator="$WORKSPACE_USER"
# TAILSCALE_AUTHKEY is injected at container start
if [ -n "${TAILSCALE_AUTHKEY:-}" ]; then
  tailscale up --authkey="$TAILSCALE_AUTHKEY" --accept-routes --accept-dns=false
  tailscale status
else
  echo "Warning: TAILSCALE_AUTHKEY not set. Run 'tailscale up --authkey=<key>' manually."
fi
""".strip(),
        verify_command="tailscale version",
    ),
    # Runtimes
    TechStack(
        id="nodejs",
        name="Node.js 22",
        description="Node.js 22.x LTS with npm",
        category=TechStackCategory.RUNTIME,
        install_script="""
curl -fsSL https://deb.nodesource.com/setup_22.x | bash -
apt-get install -y nodejs
node --version
npm --version
""".strip(),
        verify_command="node --version",
    ),
    TechStack(
        id="python",
        name="Python 3.x",
        description="Python 3 with pip and venv",
        category=TechStackCategory.RUNTIME,
        install_script="""
apt-get update
apt-get install -y python3 python3-pip python3-venv python3-dev
update-alternatives --install /usr/bin/python python /usr/bin/python3 1 || true
python3 --version
""".strip(),
        verify_command="python3 --version",
    ),
    TechStack(
        id="go",
        name="Go",
        description="Go programming language (latest stable)",
        category=TechStackCategory.RUNTIME,
        install_script="""
GO_VERSION=$(curl -s "https://go.dev/VERSION?m=text" | head -1)
curl -fsSL "https://go.dev/dl/${GO_VERSION}.linux-amd64.tar.gz" -o /tmp/go.tar.gz
rm -rf /usr/local/go
tar -C /usr/local -xzf /tmp/go.tar.gz
rm /tmp/go.tar.gz
echo 'export PATH=$PATH:/usr/local/go/bin' > /etc/profile.d/go.sh
/usr/local/go/bin/go version
""".strip(),
        verify_command="/usr/local/go/bin/go version",
    ),
    TechStack(
        id="rust",
        name="Rust",
        description="Rust programming language via rustup",
        category=TechStackCategory.RUNTIME,
        install_script="""
su - "$WORKSPACE_USER" -c 'curl --proto "=https" --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y'
curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y
su - "$WORKSPACE_USER" -c '. ~/.cargo/env && rustc --version'
""".strip(),
        verify_command="su - \"$WORKSPACE_USER\" -c '. ~/.cargo/env && rustc --version'",
    ),
    TechStack(
        id="docker",
        name="Docker",
        description="Docker Engine (requires LXC nesting)",
        category=TechStackCategory.RUNTIME,
        requires_nesting=True,
        install_script="""
curl -fsSL https://get.docker.com | sh
usermod -aG docker "$WORKSPACE_USER"
systemctl enable docker
systemctl start docker
docker --version
""".strip(),
        verify_command="docker --version",
    ),
    # AI assistants
    TechStack(
        id="chrome-mcp-proxy",
        name="Chrome MCP Proxy",
        description="Chrome DevTools Protocol proxy over Tailscale for remote browser control",
        category=TechStackCategory.AI_ASSISTANT,
        dependencies=("nodejs", "tailscale-vpn"),
        install_script="""
# VIBESPACE_SERVER_URL is injected at container start
if [ -z "${VIBESPACE_SERVER_URL:-}" ]; then
  echo "Error: VIBESPACE_SERVER_URL not set. Cannot download CDP shim bundle."
  exit 1
fi
curl -fsSL "$VIBESPACE_SERVER_URL/api/cdp-shim/bundle" -o /tmp/cdp-shim.tar.gz
mkdir -p /opt/vibespace-cdp-shim
tar -xzf /tmp/cdp-shim.tar.gz -C /opt/vibespace-cdp-shim
rm /tmp/cdp-shim.tar.gz
chmod +x /opt/vibespace-cdp-shim/cdp-shim
ln -sf /opt/vibespace-cdp-shim/cdp-shim /usr/local/bin/chromium
chromium --version
""".strip(),
        verify_command="chromium --version",
    ),
    TechStack(
        id="claude",
        name="Claude Code",
        description="Anthropic AI coding assistant",
        category=TechStackCategory.AI_ASSISTANT,
        dependencies=("nodejs",),
        install_script=_npm_user_install("@anthropic-ai/claude-code", "claude", "Claude Code CLI"),
        verify_command=_npm_user_verify("claude"),
    ),
    TechStack(
        id="gemini",
        name="Gemini CLI",
        description="Google AI assistant (free tier available)",
        category=TechStackCategory.AI_ASSISTANT,
        dependencies=("nodejs",),
        install_script=_npm_user_install("@google/gemini-cli", "gemini", "Gemini CLI"),
        verify_command=_npm_user_verify("gemini"),
    ),
    TechStack(
        id="codex",
        name="OpenAI Codex",
        description="OpenAI coding assistant",
        category=TechStackCategory.AI_ASSISTANT,
        dependencies=("nodejs",),
        install_script=_npm_user_install("@openai/codex", "codex", "Codex CLI"),
        verify_command=_npm_user_verify("codex"),
    ),
    TechStack(
        id="copilot",
        name="GitHub Copilot",
        description="GitHub AI pair programmer (requires subscription)",
        category=TechStackCategory.AI_ASSISTANT,
        dependencies=("nodejs",),
        install_script=_npm_user_install("@githubnext/github-copilot-cli", "github-copilot-cli", "Copilot CLI"),
        verify_command=_npm_user_verify("github-copilot-cli"),
    ),
    TechStack(
        id="mistral",
        name="Mistral Vibe",
        description="Mistral AI coding agent (Devstral)",
        category=TechStackCategory.AI_ASSISTANT,
        dependencies=("nodejs",),
        install_script=_npm_user_install("@mistralai/mistral-vibe", "mistral-vibe", "Mistral Vibe"),
        verify_command=_npm_user_verify("mistral-vibe"),
    ),
    TechStack(
        id="cody",
        name="Cody (Sourcegraph)",
        description="Sourcegraph AI code assistant",
        category=TechStackCategory.AI_ASSISTANT,
        dependencies=("nodejs",),
        install_script=_npm_user_install("@sourcegraph/cody", "cody", "Cody CLI"),
        verify_command=_npm_user_verify("cody"),
    ),
    TechStack(
        id="opencode",
        name="OpenCode",
        description="Open-source AI coding agent",
        category=TechStackCategory.AI_ASSISTANT,
        dependencies=("nodejs",),
        install_script=_npm_user_install("opencode-ai", "opencode", "OpenCode"),
        verify_command=_npm_user_verify("opencode"),
    ),
)

_BY_ID: Dict[str, TechStack] = {stack.id: stack for stack in TECH_STACKS}


def list_tech_stacks() -> List[TechStack]:
    return list(TECH_STACKS)


def get_tech_stack(stack_id: str) -> Optional[TechStack]:
    return _BY_ID.get(stack_id)


def resolve_tech_stacks(stack_ids: Iterable[str]) -> List[TechStack]:
    """
    Resolve ids into install order.

    Dependencies come before their dependents and every stack appears once.
    Unknown ids are skipped.

    Raises:
        TechStackCycleError: if the catalog's dependency graph has a cycle
    """
    result: List[TechStack] = []
    added: Set[str] = set()
    visiting: Set[str] = set()

    def add_with_dependencies(stack_id: str) -> None:
        if stack_id in added:
            return
        stack = _BY_ID.get(stack_id)
        if stack is None:
            logger.warning(f"Unknown tech stack '{stack_id}', skipping")
            return
        if stack_id in visiting:
            raise TechStackCycleError(f"Dependency cycle through tech stack '{stack_id}'")
        visiting.add(stack_id)
        for dep_id in stack.dependencies:
            add_with_dependencies(dep_id)
        visiting.discard(stack_id)
        added.add(stack_id)
        result.append(stack)

    for stack_id in stack_ids:
        add_with_dependencies(stack_id)
    return result


def requires_nesting(stack_ids: Iterable[str]) -> bool:
    """True if any stack in the resolved closure needs the LXC nesting feature."""
    return any(stack.requires_nesting for stack in resolve_tech_stacks(stack_ids))


def generate_install_script(stack_ids: Iterable[str]) -> str:
    """Bash script installing the resolved stacks in order. Empty if nothing resolves."""
    stacks = resolve_tech_stacks(stack_ids)
    if not stacks:
        return ""

    sections = [
        f"# ============================================\n"
        f"# Installing: {stack.name}\n"
        f"# ============================================\n"
        f"{stack.install_script}\n"
        for stack in stacks
    ]
    names = ", ".join(stack.name for stack in stacks)
    return (
        "#!/bin/bash\n"
        "set -e\n"
        "export DEBIAN_FRONTEND=noninteractive\n"
        f"{SCRIPT_HEADER}\n\n"
        f'echo "Installing tech stacks: {names}"\n\n'
        + "\n".join(sections)
        + '\necho "Tech stack installation complete!"\n'
    )


def generate_verify_script(stack_ids: Iterable[str]) -> str:
    """Bash script printing ``<id>:installed`` or ``<id>:missing`` per resolved stack."""
    stacks = resolve_tech_stacks(stack_ids)
    if not stacks:
        return 'echo "No stacks to verify"'

    checks = [
        f"# Check {stack.name}\n"
        f"if {stack.verify_command} > /dev/null 2>&1; then\n"
        f'  echo "{stack.id}:installed"\n'
        f"else\n"
        f'  echo "{stack.id}:missing"\n'
        f"fi\n"
        for stack in stacks
    ]
    return f"#!/bin/bash\n{SCRIPT_HEADER}\n\n" + "\n".join(checks)


def parse_verify_output(output: str) -> Dict[str, bool]:
    """Map stack id -> installed from the verify script's stdout."""
    results = {}
    for line in output.splitlines():
        stack_id, sep, state = line.strip().rpartition(":")
        if sep and state in ("installed", "missing"):
            results[stack_id] = state == "installed"
    return results


def get_stacks_by_category(category: TechStackCategory) -> List[TechStack]:
    return [stack for stack in TECH_STACKS if stack.category == category]


def get_stacks_depending_on(stack_id: str) -> List[TechStack]:
    """Stacks that list ``stack_id`` as a direct dependency."""
    return [stack for stack in TECH_STACKS if stack_id in stack.dependencies]


def get_selected_dependent_names(stack_id: str, selected_ids: Iterable[str]) -> List[str]:
    """Names of selected stacks that directly depend on ``stack_id``."""
    selected = set(selected_ids)
    return [stack.name for stack in get_stacks_depending_on(stack_id) if stack.id in selected]
