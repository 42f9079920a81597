"""
ConfigData documents shipped with components.

Example:

    apiVersion: config.ocm.software/v1alpha1
    kind: ConfigData
    metadata:
      name: ocm-config
    configuration:
      defaults:
        replicas: 1
      schema:
        type: object
        properties:
          replicas:
            type: integer
      rules:
      - value: (( replicas ))
        file: helm_release.yaml
        path: spec.values.replicaCount
    localization:
    - file: deploy.yaml
      image: spec.template.spec.containers[0].image
      resource:
        name: web-server
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import yaml

from .errors import ValidationError

logger = logging.getLogger(__name__)

KIND = "ConfigData"


@dataclass
class ConfigRule:
    value: Any
    path: str
    file: str


@dataclass
class ConfigurationSpec:
    defaults: dict = field(default_factory=dict)
    schema: dict | None = None
    rules: list[ConfigRule] = field(default_factory=list)


@dataclass
class ResourceItem:
    name: str
    extra_identity: dict[str, str] = field(default_factory=dict)


@dataclass
class LocalizationRule:
    resource: ResourceItem
    file: str
    registry: str = ""
    repository: str = ""
    image: str = ""
    tag: str = ""


@dataclass
class ConfigData:
    name: str = ""
    configuration: ConfigurationSpec | None = None
    localization: list[LocalizationRule] = field(default_factory=list)


def load_config_data(data: bytes | str) -> ConfigData:
    """
    Parse a ConfigData YAML document.

    Raises:
        ValidationError: if the YAML cannot be decoded or the document is malformed;
            decode errors are kept in the message
    """
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise ValidationError(f"failed to unmarshal config data: {e}") from e

    if not isinstance(document, dict):
        raise ValidationError("config data must be a YAML mapping")
    kind = document.get("kind")
    if kind and kind != KIND:
        raise ValidationError(f"expected kind {KIND}, got {kind!r}")

    configuration = None
    if document.get("configuration") is not None:
        configuration = _configuration(document["configuration"])

    localization = [_localization_rule(i, rule) for i, rule in enumerate(document.get("localization") or [])]

    name = (document.get("metadata") or {}).get("name", "")
    logger.debug(
        f"Loaded config data {name!r} with "
        f"{len(configuration.rules) if configuration else 0} configuration rules "
        f"and {len(localization)} localization rules"
    )
    return ConfigData(name=name, configuration=configuration, localization=localization)


def _configuration(data) -> ConfigurationSpec:
    if not isinstance(data, dict):
        raise ValidationError("configuration must be a mapping")
    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ValidationError("configuration.defaults must be a mapping")
    schema = data.get("schema")
    if schema is not None and not isinstance(schema, dict):
        raise ValidationError("configuration.schema must be a mapping")

    rules = []
    for i, rule in enumerate(data.get("rules") or []):
        if not isinstance(rule, dict) or not rule.get("path") or not rule.get("file"):
            raise ValidationError(f"configuration rule {i} requires path and file")
        rules.append(ConfigRule(value=rule.get("value"), path=rule["path"], file=rule["file"]))
    return ConfigurationSpec(defaults=defaults, schema=schema or None, rules=rules)


def _localization_rule(index: int, data) -> LocalizationRule:
    if not isinstance(data, dict):
        raise ValidationError(f"localization rule {index} must be a mapping")
    if data.get("mapping"):
        raise ValidationError(f"localization rule {index}: mapping transforms are not supported")

    resource = data.get("resource") or {}
    if not resource.get("name"):
        raise ValidationError(f"localization rule {index} requires resource.name")
    if not data.get("file"):
        raise ValidationError(f"localization rule {index} requires file")

    rule = LocalizationRule(
        resource=ResourceItem(
            name=resource["name"],
            extra_identity={str(k): str(v) for k, v in (resource.get("extraIdentity") or {}).items()},
        ),
        file=data["file"],
        registry=data.get("registry", "") or "",
        repository=data.get("repository", "") or "",
        image=data.get("image", "") or "",
        tag=data.get("tag", "") or "",
    )
    if not (rule.registry or rule.repository or rule.image or rule.tag):
        raise ValidationError(f"localization rule {index} names none of registry, repository, image or tag")
    return rule
