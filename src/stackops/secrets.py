"""Generated secrets and configuration values in the parameter store.

A secret specification is a nested document (inline, YAML text, a YAML file
or a file in a source repository) that is flattened into path -> expression
pairs. Each expression is evaluated once per build:

    random(hex,N)       N random hex characters
    random(base64,N)    N random URL-safe base64 characters
    uuid                a random UUID
    rsa(BITS)           a PEM encoded RSA private key
    ssm(/some/path)     the value (and type) of another stored parameter
    ssm(name)           same, with the path taken from the substitutions
    ...{{ token }}...   interpolation from the substitutions
    anything else       a literal

Generated values carry a "Generated with <expression>" description. On
update a generated value whose description did not change is left alone, so
re-running an update does not rotate secrets that have not been touched.
"""

from __future__ import annotations

import logging
import re
import secrets as random_source
import time
import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .artifacts import ArtifactSource
from .config import MAX_SECRET_DELETE_BATCH, MAX_SPEC_FILE_SIZE_BYTES
from .engine import ParameterStore

logger = logging.getLogger(__name__)

GENERATED_WITH_PREFIX = "Generated with"

DEFAULT_SECRET_TYPE = "SecureString"
LIST_SECRET_TYPE = "StringList"

# Pause between individual writes on create to stay under the store's rate limit
SECRET_PUT_DELAY_SECONDS = 0.1

RANDOM_HEX_PATTERN = r"^random\(hex,(\d+)\)$"
RANDOM_BASE64_PATTERN = r"^random\(base64,(\d+)\)$"
RSA_PATTERN = r"^rsa\((\d+)\)$"
UUID_EXPRESSION = "uuid"
INTERPOLATION_PRESENT_PATTERN = r"{([^{}]+)}"
INTERPOLATION_TOKEN_PATTERN = r"{{\W*(\w+)\W*}}"
SSM_REFERENCE_PATTERN = r"^ssm\((.*)\)$"

MIN_RSA_KEY_BITS = 1024

SpecValue = str | list[str]


class SecretBuildError(Exception):
    """Raised when secrets cannot be built from their specification."""

    pass


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def _flatten(data: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, SpecValue]:
    flat: dict[str, SpecValue] = {}
    for key, value in data.items():
        path = (*prefix, str(key))
        if isinstance(value, Mapping):
            flat.update(_flatten(value, path))
        elif isinstance(value, (list, tuple)):
            flat["/".join(path)] = [_stringify(item) for item in value]
        else:
            flat["/".join(path)] = _stringify(value)
    return flat


class SecretSpecification:
    """A nested secrets document, optionally narrowed to one top-level key."""

    def __init__(self, data: Mapping[str, Any], top_key: str | None = None) -> None:
        if not isinstance(data, Mapping):
            raise SecretBuildError(
                f"A secrets specification must be a mapping, not {type(data).__name__}"
            )
        if top_key is not None:
            if top_key not in data:
                raise SecretBuildError(f"Top key '{top_key}' not found in secrets specification")
            data = data[top_key]
            if not isinstance(data, Mapping):
                raise SecretBuildError(f"Top key '{top_key}' must hold a mapping")
        self._data = dict(data)

    @classmethod
    def from_content(
        cls,
        content: Mapping[str, Any] | str,
        format: str = "yml",
        top_key: str | None = None,
    ) -> SecretSpecification:
        """Build from an inline mapping or from YAML text."""
        if isinstance(content, Mapping):
            return cls(content, top_key)
        if not isinstance(content, str):
            raise SecretBuildError(
                f"Unknown secrets specification content type: {type(content).__name__}"
            )
        if format not in ("yml", "yaml"):
            raise SecretBuildError(f"{format} is not yet handled")
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise SecretBuildError(f"Invalid YAML in secrets specification: {e}") from e
        return cls(data or {}, top_key)

    @classmethod
    def from_file(cls, path: str | Path, top_key: str | None = None) -> SecretSpecification:
        spec_path = Path(path)
        if not spec_path.is_file():
            raise SecretBuildError(f"Secrets specification not found: {spec_path}")
        if spec_path.stat().st_size > MAX_SPEC_FILE_SIZE_BYTES:
            raise SecretBuildError(
                f"Secrets specification exceeds maximum size of "
                f"{MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
            )
        return cls.from_content(spec_path.read_text(encoding="utf-8"), top_key=top_key)

    @classmethod
    def from_git(
        cls,
        source: ArtifactSource,
        *,
        org_slash_repo: str,
        sha: str,
        path: str,
        top_key: str | None = None,
    ) -> SecretSpecification:
        content = source.file_content_at_sha(org_slash_repo=org_slash_repo, sha=sha, path=path)
        return cls.from_content(content, top_key=top_key)

    @property
    def data(self) -> dict[str, Any]:
        return dict(self._data)

    def expanded_data(self) -> dict[str, SpecValue]:
        """Flattened "a/b/c" -> expression pairs."""
        return _flatten(self._data)


@dataclass(frozen=True)
class SecretEntry:
    """One parameter to be written to the store."""

    name: str
    value: str
    type: str = DEFAULT_SECRET_TYPE
    description: str | None = None

    @property
    def generated(self) -> bool:
        return bool(self.description and self.description.startswith(GENERATED_WITH_PREFIX))

    def __repr__(self) -> str:
        # Values stay out of logs and tracebacks
        return f"SecretEntry(name={self.name!r}, type={self.type!r})"


def _existing_field(existing: Any, name: str) -> Any:
    if isinstance(existing, Mapping):
        return existing.get(name)
    return getattr(existing, name, None)


def changed_secrets(
    existing: Mapping[str, Any], proposed: Iterable[SecretEntry]
) -> list[SecretEntry]:
    """The proposed entries that need writing.

    An entry is skipped when a stored parameter with the same name has the
    same value, or when both were generated from the same expression (equal
    "Generated with" descriptions), even though the new random value differs.

    Args:
        existing: Stored parameters by name; each has value and description
            (as attributes or mapping keys).
        proposed: Freshly built entries.
    """
    changed: list[SecretEntry] = []
    for entry in proposed:
        stored = existing.get(entry.name)
        if stored is not None:
            if _existing_field(stored, "value") == entry.value:
                continue
            # Descriptions are only fetched once values differ
            if entry.generated and entry.description == _existing_field(stored, "description"):
                continue
        changed.append(entry)
    return changed


def cycle_trigger_value() -> str:
    """A fresh value for a parameter whose only job is to force a restart."""
    return random_source.token_hex(8)


class SecretBuilder:
    """Evaluates specifications into entries under one key prefix."""

    def __init__(
        self,
        key_prefix: str,
        lookup: Callable[[str], Mapping[str, Any] | None] | None = None,
    ) -> None:
        self._key_prefix = key_prefix
        self._lookup = lookup

    def build(
        self,
        specifications: SecretSpecification | Iterable[SecretSpecification],
        substitutions: Mapping[str, Any] | None = None,
    ) -> list[SecretEntry]:
        """Build every entry before anything is written.

        Later specifications override earlier ones path by path.

        Raises:
            SecretBuildError: On an empty specification list, an unresolved
                token, a failed cross-reference or a malformed directive.
        """
        if isinstance(specifications, SecretSpecification):
            specifications = [specifications]
        specifications = list(specifications or [])
        if not specifications:
            raise SecretBuildError("Cannot build secrets without a specification")

        expanded: dict[str, SpecValue] = {}
        for specification in specifications:
            expanded.update(specification.expanded_data())

        substitutions = {str(key): value for key, value in (substitutions or {}).items()}
        return [self.build_entry(name, value, substitutions) for name, value in expanded.items()]

    def build_entry(
        self, secret_name: str, spec_value: SpecValue, substitutions: Mapping[str, Any]
    ) -> SecretEntry:
        name = f"{self._key_prefix}/{secret_name}"

        if isinstance(spec_value, list):
            values = [self.evaluate(item, substitutions)[0] for item in spec_value]
            return SecretEntry(name=name, value=",".join(values), type=LIST_SECRET_TYPE)

        spec_value = spec_value.strip()
        value, type_, generated = self.evaluate(spec_value, substitutions)
        description = f"{GENERATED_WITH_PREFIX} {spec_value}" if generated else None
        return SecretEntry(name=name, value=value, type=type_, description=description)

    def evaluate(self, expression: str, substitutions: Mapping[str, Any]) -> tuple[str, str, bool]:
        """Evaluate one expression.

        Returns:
            (value, parameter type, whether the value was generated)
        """
        if match := re.match(RANDOM_HEX_PATTERN, expression):
            length = int(match.group(1))
            return random_source.token_hex(length)[:length], DEFAULT_SECRET_TYPE, True

        if match := re.match(RANDOM_BASE64_PATTERN, expression):
            length = int(match.group(1))
            return random_source.token_urlsafe(length)[:length], DEFAULT_SECRET_TYPE, True

        if match := re.match(RSA_PATTERN, expression):
            return _rsa_private_key(int(match.group(1))), DEFAULT_SECRET_TYPE, True

        if expression == UUID_EXPRESSION:
            return str(uuid.uuid4()), DEFAULT_SECRET_TYPE, True

        if re.search(INTERPOLATION_PRESENT_PATTERN, expression):
            return _interpolate(expression, substitutions), DEFAULT_SECRET_TYPE, False

        if match := re.match(SSM_REFERENCE_PATTERN, expression):
            value, type_ = self._dereference(match.group(1), substitutions)
            return value, type_, False

        return expression, DEFAULT_SECRET_TYPE, False

    def _dereference(self, reference: str, substitutions: Mapping[str, Any]) -> tuple[str, str]:
        if reference.startswith("/"):
            parameter_name = reference
        else:
            parameter_name = _stringify(substitutions.get(reference))

        if not parameter_name:
            raise SecretBuildError(
                f"{reference} is neither a literal parameter name nor available "
                "in the given substitutions"
            )
        if self._lookup is None:
            raise SecretBuildError(f"Cannot resolve '{reference}' without a parameter store")

        parameter = self._lookup(parameter_name)
        if parameter is None:
            raise SecretBuildError(f"Could not get secret '{reference}'")
        return parameter["Value"], parameter.get("Type", DEFAULT_SECRET_TYPE)


def _interpolate(expression: str, substitutions: Mapping[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        token = match.group(1)
        if token not in substitutions:
            raise SecretBuildError(f"no substitution provided for {token}")
        value = substitutions[token]
        return "" if value is None else str(value)

    return re.sub(INTERPOLATION_TOKEN_PATTERN, replace, expression)


def _rsa_private_key(bits: int) -> str:
    if bits < MIN_RSA_KEY_BITS:
        raise SecretBuildError(f"rsa({bits}): key size must be at least {MIN_RSA_KEY_BITS} bits")
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def key_prefix_for(namespace: Iterable[str | None]) -> str:
    """"/" followed by the non-blank namespace parts joined by "/"."""
    parts = [str(part).strip("/") for part in namespace if part and str(part).strip()]
    return "/" + "/".join(parts)


class SecretSynchronizer:
    """The secrets of one namespace: build, write, diff, read back, delete."""

    def __init__(
        self,
        store: ParameterStore,
        namespace: Iterable[str | None],
        *,
        dry_run: bool = True,
        specifications: Iterable[SecretSpecification] | None = None,
        substitutions: Mapping[str, Any] | None = None,
        specification_loader: Callable[[], list[SecretSpecification]] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            specification_loader: Called on first build when no specifications
                were given, so that remote documents are only fetched when
                secrets are actually written.
        """
        self._store = store
        self._namespace = [part for part in namespace]
        self._dry_run = dry_run
        self._specifications = list(specifications or [])
        self._substitutions = dict(substitutions or {})
        self._sleep = sleep
        self._specification_loader = specification_loader
        self._data: dict[str, Any] | None = None

    @property
    def key_prefix(self) -> str:
        return key_prefix_for(self._namespace)

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def build(
        self,
        specifications: Iterable[SecretSpecification] | None = None,
        substitutions: Mapping[str, Any] | None = None,
    ) -> list[SecretEntry]:
        if specifications is None:
            if not self._specifications and self._specification_loader is not None:
                self._specifications = list(self._specification_loader())
            specifications = self._specifications
        builder = SecretBuilder(self.key_prefix, lookup=self._store.get)
        return builder.build(
            specifications,
            substitutions if substitutions is not None else self._substitutions,
        )

    def data(self, reload: bool = False) -> dict[str, Any]:
        """Stored parameters under this namespace, cached until reloaded."""
        if reload or self._data is None:
            self._data = self._store.parameters_by_path(self.key_prefix)
        return self._data

    def get(self, local_name: str) -> str | None:
        local_name = str(local_name)
        if not local_name.startswith("/"):
            local_name = f"/{local_name}"
        parameter = self.data().get(f"{self.key_prefix}{local_name}")
        return parameter.value if parameter is not None else None

    def create(
        self,
        specifications: Iterable[SecretSpecification] | None = None,
        substitutions: Mapping[str, Any] | None = None,
    ) -> list[SecretEntry]:
        """Write every built entry."""
        entries = self.build(specifications, substitutions)

        if self._dry_run:
            logger.info("**** DRY RUN ****")
        logger.info(
            "Creating secrets in the parameter store",
            extra={"prefix": self.key_prefix, "secrets": [entry.name for entry in entries]},
        )

        if not self._dry_run:
            for entry in entries:
                self._put(entry)
                self._sleep(SECRET_PUT_DELAY_SECONDS)
            self._data = None

        return entries

    def update(
        self,
        specifications: Iterable[SecretSpecification] | None = None,
        substitutions: Mapping[str, Any] | None = None,
        force_update_these: Iterable[str] = (),
    ) -> bool:
        """Write the entries that changed.

        Args:
            force_update_these: Regex patterns; matching entries are written
                even when unchanged.

        Returns:
            True when any entry changed (or would have, in dry run).
        """
        existing = self.data(reload=True)
        entries = self.build(specifications, substitutions)
        changed = changed_secrets(existing, entries)

        changed_names = {entry.name for entry in changed}
        for pattern in force_update_these:
            for entry in entries:
                if re.search(pattern, entry.name) and entry.name not in changed_names:
                    changed.append(entry)
                    changed_names.add(entry.name)

        if self._dry_run:
            logger.info("**** DRY RUN ****")

        if not changed:
            logger.info("Secrets did not change", extra={"prefix": self.key_prefix})
            return False

        logger.info(
            "Updating secrets in the parameter store",
            extra={"prefix": self.key_prefix, "secrets": [entry.name for entry in changed]},
        )

        if not self._dry_run:
            for entry in changed:
                self._put(entry)
            self._data = None

        return True

    def delete(self) -> list[str]:
        """Delete everything under the namespace; safe to repeat."""
        names = list(self.data(reload=True).keys())
        if not names:
            return []

        if self._dry_run:
            logger.info("**** DRY RUN ****")
        logger.info(
            "Deleting secrets from the parameter store",
            extra={"prefix": self.key_prefix, "secrets": names},
        )

        if not self._dry_run:
            self._data = None
            for start in range(0, len(names), MAX_SECRET_DELETE_BATCH):
                batch = names[start : start + MAX_SECRET_DELETE_BATCH]
                invalid = self._store.delete(batch)
                if invalid:
                    logger.debug(
                        "Unable to delete some secrets (likely already deleted)",
                        extra={"invalid": invalid},
                    )

        return names

    def _put(self, entry: SecretEntry) -> None:
        self._store.put(entry.name, entry.value, entry.type, entry.description)


class SecretsSet:
    """Several secret blocks handled as one."""

    def __init__(self, secrets: Iterable[SecretSynchronizer]) -> None:
        self._secrets = list(secrets)

    def __iter__(self) -> Iterator[SecretSynchronizer]:
        return iter(self._secrets)

    def __len__(self) -> int:
        return len(self._secrets)

    def create(self) -> None:
        for block in self._secrets:
            block.create()

    def update(self, force_update_these: Iterable[str] = ()) -> bool:
        force = list(force_update_these)
        # Every block is updated; no short-circuit
        results = [block.update(force_update_these=force) for block in self._secrets]
        return any(results)

    def delete(self) -> None:
        for block in self._secrets:
            block.delete()
