"""Stack templates: loading, inspection and upload.

Templates are read from disk (JSON or YAML with intrinsic-function tags such
as !Ref) or taken from an already deployed stack. Before use they are
validated by the engine and uploaded once to the template bucket; the stack
references them by URL.
"""

from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_TEMPLATE_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

IAM_RESOURCE_PREFIX = "AWS::IAM::"


class TemplateInvalid(Exception):
    """Raised when a template cannot be read or is rejected by the engine."""

    def __init__(self, message: str, path: str | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.path = path
        self.body = body


class _TemplateLoader(yaml.SafeLoader):
    """SafeLoader that understands short-form intrinsic functions."""

    pass


def _construct_intrinsic(loader: yaml.Loader, tag_suffix: str, node: yaml.Node) -> dict[str, Any]:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix == "Ref":
        return {"Ref": value}
    if tag_suffix == "GetAtt" and isinstance(value, str):
        value = value.split(".", 1)
    return {f"Fn::{tag_suffix}": value}


_TemplateLoader.add_multi_constructor("!", _construct_intrinsic)


class Template:
    """A stack template body with helpers to inspect it."""

    def __init__(self, body: str, *, path: str | None = None, name: str | None = None) -> None:
        self._body = body
        self._path = path
        self._name = name or (Path(path).name if path else "template.yml")
        self._data: dict[str, Any] | None = None
        self.uploaded_url: str | None = None

    @classmethod
    def from_path(cls, path: str | Path) -> Template:
        """Read a template file.

        Raises:
            TemplateInvalid: If the file is missing, too large or unreadable.
        """
        template_path = Path(path)
        if not str(path):
            raise TemplateInvalid("Template path cannot be blank")

        if not template_path.is_file():
            raise TemplateInvalid(f"Template file not found: {template_path}", str(template_path))

        try:
            file_size = template_path.stat().st_size
        except OSError as e:
            raise TemplateInvalid(f"Failed to stat template {template_path}: {e}") from e

        if file_size > MAX_TEMPLATE_FILE_SIZE_BYTES:
            raise TemplateInvalid(
                f"Template exceeds maximum size of {MAX_TEMPLATE_FILE_SIZE_BYTES} bytes: "
                f"{template_path}",
                str(template_path),
            )

        try:
            body = template_path.read_text(encoding="utf-8")
        except OSError as e:
            raise TemplateInvalid(f"Failed to read template {template_path}: {e}") from e

        return cls(body, path=str(template_path.resolve()))

    @classmethod
    def from_body(cls, body: str, name: str | None = None) -> Template:
        return cls(body, name=name)

    @property
    def body(self) -> str:
        return self._body

    @property
    def path(self) -> str | None:
        return self._path

    @property
    def basename(self) -> str:
        return self._name

    @property
    def data(self) -> dict[str, Any]:
        """The parsed template (JSON first, then YAML)."""
        if self._data is None:
            self._data = self._parse()
        return self._data

    def _parse(self) -> dict[str, Any]:
        try:
            parsed = json.loads(self._body)
        except json.JSONDecodeError:
            try:
                parsed = yaml.load(self._body, Loader=_TemplateLoader)  # noqa: S506
            except yaml.YAMLError as e:
                raise TemplateInvalid(
                    f"Cannot read template {self.basename}: {e}", self._path, self._body
                ) from e

        if not isinstance(parsed, dict):
            raise TemplateInvalid(
                f"Template {self.basename} must be a mapping", self._path, self._body
            )
        return parsed

    @property
    def parameter_names(self) -> list[str]:
        return list((self.data.get("Parameters") or {}).keys())

    @property
    def resource_types(self) -> dict[str, str]:
        """Logical id -> resource type."""
        return {
            logical_id: body.get("Type", "")
            for logical_id, body in (self.data.get("Resources") or {}).items()
            if isinstance(body, dict)
        }

    def required_capabilities(self) -> list[str]:
        """Capabilities the template needs, inferred from its resource types.

        Claims named_iam whenever any IAM resource exists, without checking
        whether any of them carry custom names.
        """
        has_iam_resource = any(
            resource_type.startswith(IAM_RESOURCE_PREFIX)
            for resource_type in self.resource_types.values()
        )
        return ["named_iam"] if has_iam_resource else []


class TemplateUploader:
    """Uploads templates once per process and hands back their URL."""

    def __init__(
        self,
        s3_client: Any,
        *,
        bucket: str,
        bucket_region: str | None = None,
        folder: str | None = None,
        validate: Callable[[str], None] | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if not bucket:
            raise ValueError("bucket cannot be empty")
        self._s3 = s3_client
        self._bucket = bucket
        self._bucket_region = bucket_region
        self._folder = folder
        self._validate = validate
        self._now = now
        self._unique_folder: str | None = None

    def key_for(self, template: Template) -> str:
        if self._unique_folder is None:
            stamp = self._now().strftime("%Y%m%d_%H%M%S")
            self._unique_folder = f"{stamp}_{secrets.token_hex(4)}"
        parts = [self._folder, self._unique_folder, template.basename]
        return "/".join(part for part in parts if part)

    def url_for(self, template: Template) -> str:
        """Validate and upload the template if not done yet; return its URL."""
        if template.uploaded_url is not None:
            return template.uploaded_url

        if self._validate is not None:
            self._validate(template.body)

        key = self.key_for(template)
        self._s3.put_object(Bucket=self._bucket, Key=key, Body=template.body.encode("utf-8"))

        if self._bucket_region:
            url = f"https://{self._bucket}.s3.{self._bucket_region}.amazonaws.com/{key}"
        else:
            url = f"https://{self._bucket}.s3.amazonaws.com/{key}"

        logger.info("Uploaded template", extra={"template": template.basename, "url": url})
        template.uploaded_url = url
        return url
