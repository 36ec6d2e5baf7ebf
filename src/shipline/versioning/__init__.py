"""Version derivation: resolvers, tag sources and the version artifact."""

from shipline.versioning.resolver import (
    STRATEGY_BUILD_COUNTER,
    STRATEGY_TAG,
    VERSION_STRATEGIES,
    BuildCounterVersionResolver,
    TagVersionResolver,
    Version,
    VersionParseError,
    VersionResolver,
    parse_tag,
    resolve,
    resolver_for_strategy,
    write_version_artifact,
)
from shipline.versioning.tag_source import GitTagError, GitTagSource, StaticTagSource, TagSource

__all__ = [
    "STRATEGY_BUILD_COUNTER",
    "STRATEGY_TAG",
    "VERSION_STRATEGIES",
    "BuildCounterVersionResolver",
    "GitTagError",
    "GitTagSource",
    "StaticTagSource",
    "TagSource",
    "TagVersionResolver",
    "Version",
    "VersionParseError",
    "VersionResolver",
    "parse_tag",
    "resolve",
    "resolver_for_strategy",
    "write_version_artifact",
]
