"""First-boot payload generator.

The controller treats the payload as opaque bytes keyed by
``(owner_id, server_id)``; providers pass it to the instance as user data.
"""

from __future__ import annotations

from typing import Protocol


class BootstrapGenerator(Protocol):
    def __call__(self, owner_id: str, server_id: str) -> bytes: ...


def default_bootstrap(owner_id: str, server_id: str) -> bytes:
    """Generate a cloud-init bash script that hardens and tags the host."""
    script = f"""#!/bin/bash
set -e

exec > >(tee /var/log/vmfleet-bootstrap.log)
exec 2>&1

echo "=== vmfleet bootstrap ==="
echo "Owner ID: {owner_id}"
echo "Server ID: {server_id}"

export DEBIAN_FRONTEND=noninteractive
apt-get update
apt-get upgrade -y
apt-get install -y curl wget git ufw fail2ban unattended-upgrades

# Docker
curl -fsSL https://get.docker.com -o get-docker.sh
sh get-docker.sh
usermod -aG docker ubuntu

# Firewall
ufw --force enable
ufw allow 22/tcp
ufw allow 80/tcp
ufw allow 443/tcp

systemctl enable fail2ban
systemctl start fail2ban

cat > /etc/vmfleet-info.json << EOF
{{
  "ownerId": "{owner_id}",
  "serverId": "{server_id}",
  "installedAt": "$(date -Iseconds)"
}}
EOF

dpkg-reconfigure -plow unattended-upgrades

echo "Bootstrap completed at: $(date)"
"""
    return script.encode()
