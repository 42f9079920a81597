"""
Localization and configuration of packaged file trees.

A mutation takes a tarred file tree (a cached snapshot or a component
resource), a ConfigData resource and optionally override values, computes a
list of substitutions, applies them to the extracted tree, optionally merges a
strategic merge patch on top, and caches the repackaged tree as a new snapshot.

Stages:
    Start -> FetchSource -> FetchConfig -> ComputeSubstitutions
          -> ApplySubstitutions -> RepackageAndCache -> Done

Any failure moves the mutation to Failed and is raised as a StageError naming
the stage; the error keeps the kind and retryability of its cause.
"""

import json
import logging
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

import jsonschema
import yaml

from .archive import extract_tar, read_all
from .cache import OCICache
from .config import config
from .configdata import ConfigData, LocalizationRule, load_config_data
from .context import Context
from .errors import NotFoundError, OCMError, StageError, UnresolvedReferenceError, ValidationError
from .evaluator import Evaluator, TemplateEvaluator
from .identity import LATEST, Identity, resource_identity, select_tag
from .localize import Substitution, apply_substitutions, parse_path
from .ocm import ComponentVersion, ReferenceNode, Resolver, ResourceRef
from .snapshot import Snapshot, SnapshotWriter
from .strategic_merge import StrategicMergePatch
from .validation import parse_reference, validate_tag

logger = logging.getLogger(__name__)

ADJUSTMENTS_KEY = "adjustments"

MUTATED_TAG_SUFFIX = "-mutated"

_ADJUSTMENT_PATH_RE = re.compile(rf"^{ADJUSTMENTS_KEY}\[(\d+)\]")


class Stage(str, Enum):
    START = "Start"
    FETCH_SOURCE = "FetchSource"
    FETCH_CONFIG = "FetchConfig"
    COMPUTE_SUBSTITUTIONS = "ComputeSubstitutions"
    APPLY_SUBSTITUTIONS = "ApplySubstitutions"
    REPACKAGE_AND_CACHE = "RepackageAndCache"
    DONE = "Done"
    FAILED = "Failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class ComponentResource:
    """A resource inside a resolved component version."""

    component: ComponentVersion
    resource: ResourceRef
    tree: ReferenceNode | None = None

    def identity(self) -> Identity:
        return resource_identity(
            self.component.name,
            self.component.version,
            self.resource.name,
            self.resource.version,
            self.resource.extra_identity,
        )


@dataclass
class MutationRequest:
    """
    Input of one mutation.

    Exactly one of ``source_snapshot`` and ``source_resource`` must be set.
    ``values`` (or ``values_document`` with an optional dotted ``values_sub_path``)
    switch the mutation from localization to configuration.
    """

    source_snapshot: Snapshot | None = None
    source_resource: ComponentResource | None = None
    config_ref: ComponentResource | None = None
    values: dict | None = None
    values_document: bytes | str | None = None
    values_sub_path: str = ""
    patch: StrategicMergePatch | None = None
    tag: str | None = None

    @property
    def configures(self) -> bool:
        return self.values is not None or self.values_document is not None


@dataclass
class MutationResult:
    snapshot: Snapshot
    substitutions: list[Substitution]
    stages: list[Stage] = field(default_factory=list)
    source_version: str = ""
    config_version: str = ""


class MutationEngine:
    """
    Runs mutations.

    Args:
        resolver: Resolver used to fetch resources and resolve access
        cache: Snapshot cache for source snapshots and results
        evaluator: Template evaluator for configuration rules
        writer: Snapshot writer, defaults to one on ``cache``
    """

    def __init__(
        self,
        resolver: Resolver,
        cache: OCICache,
        evaluator: Evaluator | None = None,
        writer: SnapshotWriter | None = None,
    ):
        self.resolver = resolver
        self.cache = cache
        self.evaluator = evaluator or TemplateEvaluator()
        self.writer = writer or SnapshotWriter(cache)

    def mutate(self, ctx: Context, request: MutationRequest) -> MutationResult:
        """
        Run a mutation to completion.

        Raises:
            StageError: wrapping the failure and naming the stage it happened in
        """
        stages: list[Stage] = []

        with self._stage(Stage.START, stages):
            self._check_request(request)

        with self._stage(Stage.FETCH_SOURCE, stages):
            source_data, source_version = self._fetch_source(ctx, request)

        config_data = None
        with self._stage(Stage.FETCH_CONFIG, stages):
            if request.config_ref is not None:
                raw = self._read_resource(ctx, request.config_ref)
                if not raw:
                    raise ValidationError("config resource data cannot be empty")
                config_data = load_config_data(raw)

        substitutions: list[Substitution] = []
        with self._stage(Stage.COMPUTE_SUBSTITUTIONS, stages):
            if config_data is not None:
                if request.configures:
                    substitutions = self.configure(config_data, self._values(request))
                else:
                    substitutions = self.localize(ctx, config_data, request.config_ref)
                if not substitutions:
                    logger.info("No substitutions generated from the config data; the snapshot will have no modifications")

        with tempfile.TemporaryDirectory(prefix="mutation-", dir=config.WORK_DIR) as work_dir:
            with self._stage(Stage.APPLY_SUBSTITUTIONS, stages):
                extract_tar(source_data, work_dir, ctx)
                apply_substitutions(work_dir, substitutions, ctx)
                if request.patch is not None:
                    request.patch.apply(ctx, work_dir)

            with self._stage(Stage.REPACKAGE_AND_CACHE, stages):
                identity = self._snapshot_identity(request)
                snapshot = self.writer.write_directory(
                    ctx, work_dir, identity, tag=self._snapshot_tag(request, identity), exact_tag=True
                )

        stages.append(Stage.DONE)
        logger.info(f"Mutation finished: snapshot {snapshot.name}:{snapshot.tag} digest={snapshot.digest}")
        return MutationResult(
            snapshot=snapshot,
            substitutions=substitutions,
            stages=stages,
            source_version=source_version,
            config_version=request.config_ref.component.version if request.config_ref else "",
        )

    @contextmanager
    def _stage(self, stage: Stage, stages: list[Stage]):
        stages.append(stage)
        logger.debug(f"Mutation stage {stage}")
        try:
            yield
        except StageError:
            raise
        except OCMError as e:
            stages.append(Stage.FAILED)
            logger.warning(f"Mutation failed in stage {stage} ({e.kind}, retryable={e.retryable}): {e}")
            raise StageError(str(stage), e) from e

    # -------------------------------
    # Fetching
    # -------------------------------

    @staticmethod
    def _check_request(request: MutationRequest) -> None:
        if (request.source_snapshot is None) == (request.source_resource is None):
            raise ValidationError("exactly one of source snapshot or source resource must be set")
        if request.config_ref is None and request.patch is None:
            raise ValidationError("a config reference or a strategic merge patch is required")
        if request.configures and request.config_ref is None:
            raise ValidationError("values require a config reference")
        if request.values is not None and request.values_document is not None:
            raise ValidationError("values and a values document are mutually exclusive")
        if request.values_document is not None and not isinstance(request.values_document, (bytes, str)):
            raise ValidationError("a values document must be YAML text")
        if request.tag:
            validate_tag(request.tag)

    def _fetch_source(self, ctx: Context, request: MutationRequest) -> tuple[bytes, str]:
        if request.source_snapshot is not None:
            snapshot = request.source_snapshot
            reader = self.cache.fetch_data_by_digest(ctx, snapshot.name, snapshot.digest)
            try:
                data = read_all(reader, config.CHUNK_SIZE, ctx)
            finally:
                reader.close()
            version = snapshot.identity.get("component-version", "")
        else:
            data = self._read_resource(ctx, request.source_resource)
            version = request.source_resource.component.version

        if not data:
            raise ValidationError("source resource data cannot be empty")
        return data, version

    def _read_resource(self, ctx: Context, ref: ComponentResource) -> bytes:
        return self.resolver.get_resource_bytes(ctx, ref.component, ref.resource, ref.tree)

    # -------------------------------
    # Substitutions
    # -------------------------------

    def localize(self, ctx: Context, config_data: ConfigData, config_ref: ComponentResource) -> list[Substitution]:
        """
        Substitutions that point image references at the resources' locations.

        Resources are looked up in the component that holds the ConfigData.

        Raises:
            ValidationError: if a named resource is missing or ambiguous
            AccessError: if a resource's access cannot be turned into a reference
        """
        record = config_ref.component
        if config_ref.resource.reference_path:
            tree = config_ref.tree or self.resolver.resolve_references(ctx, config_ref.component)
            record = self.resolver.get_component_version_at(config_ref.resource.reference_path, tree)
            if record is None:
                raise NotFoundError(f"component not found for reference path {config_ref.resource.reference_path}")

        substitutions: list[Substitution] = []
        for rule in config_data.localization:
            ctx.check()
            substitutions.extend(self._localize_rule(rule, record))
        return substitutions

    def _localize_rule(self, rule: LocalizationRule, record: ComponentVersion) -> list[Substitution]:
        try:
            resource = record.descriptor.get_resource(rule.resource.name, rule.resource.extra_identity or None)
        except NotFoundError as e:
            raise ValidationError(str(e)) from e

        ref = parse_reference(self.resolver.resolve_access(resource, record))
        substitutions = []
        if rule.registry:
            substitutions.append(Substitution("registry", rule.file, rule.registry, ref.registry_host))
        if rule.repository:
            substitutions.append(Substitution("repository", rule.file, rule.repository, ref.repository))
        if rule.image:
            substitutions.append(Substitution("image", rule.file, rule.image, str(ref)))
        if rule.tag:
            substitutions.append(Substitution("tag", rule.file, rule.tag, ref.identifier))
        logger.debug(f"Localization of {resource.name} produced {len(substitutions)} substitutions")
        return substitutions

    def _values(self, request: MutationRequest) -> dict:
        if request.values is not None:
            return request.values
        try:
            document = yaml.safe_load(request.values_document)
        except yaml.YAMLError as e:
            raise ValidationError(f"failed to parse values: {e}") from e
        if request.values_sub_path:
            for token in parse_path(request.values_sub_path):
                if isinstance(token, int):
                    ok = isinstance(document, list) and token < len(document)
                else:
                    ok = isinstance(document, dict) and token in document
                if not ok:
                    raise ValidationError(f"values sub path {request.values_sub_path!r} not found")
                document = document[token]
        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ValidationError("values must be a mapping")
        return document

    def configure(self, config_data: ConfigData, values: dict) -> list[Substitution]:
        """
        Substitutions from configuration rules evaluated against defaults and values.

        Values only override keys that exist in the defaults; other keys are
        ignored. The merged values are validated against the schema, if any.

        Raises:
            ValidationError: on schema violations or template errors; unresolved
                references name the reference, the rule path and the file
        """
        spec = config_data.configuration
        if spec is None:
            raise ValidationError("config data has no configuration section")

        merged = dict(spec.defaults)
        for key, value in values.items():
            if key in merged:
                merged[key] = value
            else:
                logger.debug(f"Ignoring value {key!r} that has no default")

        if spec.schema:
            _validate_schema(merged, spec.schema)

        rules = [Substitution(f"subst-{i}", rule.file, rule.path, rule.value) for i, rule in enumerate(spec.rules)]
        template = dict(merged)
        template[ADJUSTMENTS_KEY] = [rule.to_dict() for rule in rules]

        try:
            output = self.evaluator.evaluate(json.dumps(template).encode("utf-8"))
        except UnresolvedReferenceError as e:
            raise _with_rule_context(e, rules) from e

        try:
            result = json.loads(output)
        except ValueError as e:
            raise ValidationError(f"evaluator returned invalid output: {e}") from e
        return [Substitution.from_dict(item) for item in (result.get(ADJUSTMENTS_KEY) or [])]

    # -------------------------------
    # Result
    # -------------------------------

    @staticmethod
    def _snapshot_identity(request: MutationRequest) -> Identity:
        if request.patch is not None:
            return request.patch.identity()
        return request.config_ref.identity()

    @staticmethod
    def _snapshot_tag(request: MutationRequest, identity: Identity) -> str:
        # The config resource is cached under the same identity at its version tag.
        if request.tag:
            return request.tag
        if request.patch is not None:
            return LATEST
        return f"{select_tag(identity)}{MUTATED_TAG_SUFFIX}"


def _validate_schema(values: dict, schema: dict) -> None:
    validator_class = jsonschema.validators.validator_for(schema, default=jsonschema.Draft202012Validator)
    try:
        validator_class.check_schema(schema)
    except jsonschema.SchemaError as e:
        raise ValidationError(f"invalid configuration schema: {e.message}") from e
    errors = sorted(validator_class(schema).iter_errors(values), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(f"{'.'.join(str(p) for p in e.path) or '(root)'}: {e.message}" for e in errors)
        raise ValidationError(f"validation failed: {details}")


def _with_rule_context(error: UnresolvedReferenceError, rules: list[Substitution]) -> UnresolvedReferenceError:
    match = _ADJUSTMENT_PATH_RE.match(error.node_path)
    if match and int(match.group(1)) < len(rules):
        rule = rules[int(match.group(1))]
        return UnresolvedReferenceError(
            error.reference,
            rule.path,
            f"unresolved reference '{error.reference}' in rule for path '{rule.path}' in file '{rule.file}'",
        )
    return UnresolvedReferenceError(
        error.reference,
        error.node_path,
        f"unresolved reference '{error.reference}' at '{error.node_path}'",
    )
