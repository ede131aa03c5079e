# backend/vibespace/services/provisioning_scripts.py
"""Shell scripts run inside template containers during provisioning."""

# Base packages, gh, tmux, Node.js (agent runtime), the workspace user and the agent unit.
CORE_PROVISIONING_SCRIPT = r"""
set -e

export DEBIAN_FRONTEND=noninteractive
WORKSPACE_USER="${WORKSPACE_USER:-vibe}"

echo "=== Starting core template provisioning ==="

echo "[1/9] Updating package lists..."
apt-get update

echo "[2/9] Installing base packages..."
apt-get install -y \
    curl \
    git \
    openssh-server \
    sudo \
    ca-certificates \
    gnupg \
    lsb-release \
    wget \
    build-essential \
    rsync \
    vim \
    jq

echo "[3/9] Installing GitHub CLI..."
curl -fsSL https://cli.github.com/packages/githubcli-archive-keyring.gpg | dd of=/usr/share/keyrings/githubcli-archive-keyring.gpg
chmod go+r /usr/share/keyrings/githubcli-archive-keyring.gpg
echo "deb [arch=$(dpkg --print-architecture) signed-by=/usr/share/keyrings/githubcli-archive-keyring.gpg] https://cli.github.com/packages stable main" > /etc/apt/sources.list.d/github-cli.list
apt-get update
apt-get install -y gh

echo "[4/9] Installing tmux..."
apt-get install -y tmux
cat > /etc/tmux.conf << 'TMUXEOF'
set -g mouse off
set -g default-terminal "xterm-256color"
set -ga terminal-overrides ",xterm-256color:Tc"
set -g history-limit 50000
set -sg escape-time 0
set -g base-index 1
setw -g pane-base-index 1
TMUXEOF
chmod 644 /etc/tmux.conf

echo "[5/9] Installing Node.js 22..."
curl -fsSL https://deb.nodesource.com/setup_22.x | bash -
apt-get install -y nodejs

echo "[6/9] Creating $WORKSPACE_USER user..."
if ! id "$WORKSPACE_USER" &>/dev/null; then
    useradd -m -s /bin/bash "$WORKSPACE_USER"
    usermod -aG sudo "$WORKSPACE_USER"
    echo "$WORKSPACE_USER ALL=(ALL) NOPASSWD:ALL" > "/etc/sudoers.d/$WORKSPACE_USER"
    chmod 440 "/etc/sudoers.d/$WORKSPACE_USER"
fi
if [ -f /root/.ssh/authorized_keys ]; then
    mkdir -p "/home/$WORKSPACE_USER/.ssh"
    cp /root/.ssh/authorized_keys "/home/$WORKSPACE_USER/.ssh/authorized_keys"
    chown -R "$WORKSPACE_USER:$WORKSPACE_USER" "/home/$WORKSPACE_USER/.ssh"
    chmod 700 "/home/$WORKSPACE_USER/.ssh"
    chmod 600 "/home/$WORKSPACE_USER/.ssh/authorized_keys"
fi

echo "[7/9] Creating workspace directory..."
mkdir -p /workspace
chown "$WORKSPACE_USER:$WORKSPACE_USER" /workspace
chmod 755 /workspace

echo "[8/9] Setting up workspace agent..."
mkdir -p /opt/vibespace-agent
chown -R "$WORKSPACE_USER:$WORKSPACE_USER" /opt/vibespace-agent
cat > /etc/systemd/system/vibespace-agent.service << EOF
[Unit]
Description=Vibespace Workspace Agent
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
User=$WORKSPACE_USER
Group=$WORKSPACE_USER
WorkingDirectory=/opt/vibespace-agent
ExecStart=/usr/bin/node /opt/vibespace-agent/dist/index.js
Restart=always
RestartSec=5
EnvironmentFile=-/etc/vibespace-agent.env

[Install]
WantedBy=multi-user.target
EOF
systemctl daemon-reload
systemctl enable vibespace-agent

echo "[9/9] Configuring SSH and git..."
systemctl enable ssh
for target in root "$WORKSPACE_USER"; do
    su - "$target" -c "git config --global init.defaultBranch main"
    su - "$target" -c "git config --global --add safe.directory /workspace"
    su - "$target" -c "git config --global --add safe.directory '*'"
done
su - "$WORKSPACE_USER" -c "gh config set git_protocol ssh --host github.com"

echo "=== Core template provisioning complete ==="
"""

CLEANUP_SCRIPT = """
echo "=== Cleaning up ==="
apt-get clean
rm -rf /var/lib/apt/lists/*
echo "=== Cleanup complete ==="
"""

ENV_FILE_PATH = "/etc/profile.d/vibespace-env.sh"
