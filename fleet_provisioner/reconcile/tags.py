"""Tags correlating local names with remote resources of one environment."""
from dataclasses import dataclass
from typing import List, Optional, Sequence

from mypy_boto3_ec2.type_defs import FilterTypeDef, TagTypeDef


NAME_TAG_KEY = "fleet.name"
ENV_COMMIT_TAG_KEY = "fleet.env.commit"
ENV_ORIGIN_TAG_KEY = "fleet.env.origin"
DISPLAY_TAG_KEY = "Name"

# names of the two environment-scoped security groups
SSH_GROUP_NAME = "SSH"
MESH_GROUP_NAME = "MESH"


@dataclass(frozen=True)
class EnvironmentId:
    commit: str
    origin: str
    name: str = ""

    @property
    def colon(self) -> str:
        return f"{self.origin}:{self.commit}"

    @property
    def short_name(self) -> str:
        return self.name or self.commit[:10]


def env_filters(env: EnvironmentId) -> List[FilterTypeDef]:
    return [
        {'Name': f'tag:{ENV_COMMIT_TAG_KEY}', 'Values': [env.commit]},
        {'Name': f'tag:{ENV_ORIGIN_TAG_KEY}', 'Values': [env.origin]},
    ]


def env_filters_for_resource(env: EnvironmentId, name: str) -> List[FilterTypeDef]:
    return [{'Name': f'tag:{NAME_TAG_KEY}', 'Values': [name]}] + env_filters(env)


def tags_for_resource(env: EnvironmentId, name: str) -> List[TagTypeDef]:
    return [
        {'Key': NAME_TAG_KEY, 'Value': name},
        {'Key': ENV_COMMIT_TAG_KEY, 'Value': env.commit},
        {'Key': ENV_ORIGIN_TAG_KEY, 'Value': env.origin},
        {'Key': DISPLAY_TAG_KEY, 'Value': f"{name}({env.colon})"},
    ]


def identity_tag_keys() -> List[TagTypeDef]:
    return [{'Key': key} for key in (NAME_TAG_KEY, ENV_COMMIT_TAG_KEY, ENV_ORIGIN_TAG_KEY, DISPLAY_TAG_KEY)]


def name_from_tags(tags: Optional[Sequence[TagTypeDef]]) -> Optional[str]:
    for tag in tags or []:
        if tag.get('Key') == NAME_TAG_KEY:
            return tag.get('Value')
    return None
