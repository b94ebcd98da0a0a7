import shlex
from typing import Sequence

USER_DATA_TEMPLATE = """#!/bin/bash
{authorized}
"""


def authorized_key_script(user: str, public_keys: Sequence[str]) -> str:
    """Shell snippet creating ``user`` if needed and installing ``public_keys`` for it."""
    quoted_user = shlex.quote(user)
    lines = [
        f"id -u {quoted_user} >/dev/null 2>&1 || useradd -m -s /bin/bash {quoted_user}",
        f"home=$(getent passwd {quoted_user} | cut -d: -f6)",
        'mkdir -p "$home/.ssh"',
    ]
    for key in public_keys:
        lines.append(f'echo {shlex.quote(key.strip())} >> "$home/.ssh/authorized_keys"')
    lines += [
        f'chown -R {quoted_user}: "$home/.ssh"',
        'chmod 700 "$home/.ssh"',
        'chmod 600 "$home/.ssh/authorized_keys"',
    ]
    if user != "root":
        lines.append(f"echo {shlex.quote(f'{user} ALL=(ALL) NOPASSWD:ALL')} > /etc/sudoers.d/90-{user}")
    return "\n".join(lines)


def render_user_data(user: str, public_keys: Sequence[str]) -> str:
    """Bootstrap script for a new instance; boto3 base64-encodes it when launching."""
    return USER_DATA_TEMPLATE.format(authorized=authorized_key_script(user, public_keys))
