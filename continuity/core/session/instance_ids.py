"""
Instance ID Generation
======================

Instance ids encode project and role plus a short random hash:

    {project}-{role}-{6 hex chars}     e.g. "odin-PS-ab12cd"

The hash is the head of sha256(timestamp + random bytes + project + role),
which makes collisions practically unreachable; the registry still
rejects a collision explicitly.
"""

import hashlib
import re
import secrets
import time
from typing import NamedTuple, Union

from continuity.core.errors import InvalidKeyFormatError
from continuity.core.models import InstanceRole

PROJECT_PATTERN = re.compile(r"^[a-z0-9-]{1,64}$")
INSTANCE_ID_PATTERN = re.compile(r"^([a-z0-9-]+)-(PS|MS|SA)-([a-f0-9]{6})$")

HASH_LENGTH = 6


class ParsedInstanceId(NamedTuple):
    project: str
    role: InstanceRole
    hash: str


def normalize_project(project: str) -> str:
    """Lowercase and validate a project name."""
    normalized = (project or "").strip().lower()
    if not PROJECT_PATTERN.match(normalized):
        raise InvalidKeyFormatError(
            f"Invalid project name {project!r}: use 1-64 lowercase letters, digits or hyphens",
            project=project,
        )
    return normalized


def coerce_role(role: Union[InstanceRole, str]) -> InstanceRole:
    try:
        return InstanceRole(role)
    except ValueError as e:
        raise InvalidKeyFormatError(
            f"Invalid role {role!r}: expected one of PS, MS, SA", role=role,
        ) from e


def generate_instance_id(project: str, role: Union[InstanceRole, str]) -> str:
    """Generate a fresh instance id for a project and role."""
    project = normalize_project(project)
    role = coerce_role(role)

    seed = f"{time.time_ns()}{secrets.token_hex(16)}{project}{role.value}"
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:HASH_LENGTH]

    return f"{project}-{role.value}-{digest}"


def is_valid_instance_id(instance_id: str) -> bool:
    return bool(INSTANCE_ID_PATTERN.match(instance_id or ""))


def parse_instance_id(instance_id: str) -> ParsedInstanceId:
    """Split an instance id into project, role and hash."""
    match = INSTANCE_ID_PATTERN.match(instance_id or "")
    if not match:
        raise InvalidKeyFormatError(
            f"Invalid instance id {instance_id!r}: expected {{project}}-{{PS|MS|SA}}-{{6 hex}}",
            instance_id=instance_id,
        )
    project, role, digest = match.groups()
    return ParsedInstanceId(project=project, role=InstanceRole(role), hash=digest)
