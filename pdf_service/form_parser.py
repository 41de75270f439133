from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from starlette.datastructures import FormData, UploadFile

if TYPE_CHECKING:  # noqa: TCH004
    from fastapi import Request

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


class MissingFieldError(ValueError):
    """A required request field is absent or empty."""

    def __init__(self, field_name: str) -> None:
        super().__init__(f'Required field "{field_name}" is missing')
        self.field_name = field_name


class FormParser:
    """
    Helper class to read PDF request fields from multipart/urlencoded forms
    or from the query string, with form limits configurable from
    environment variables.
    """

    def __init__(
        self,
        max_files: int | None = None,
        max_fields: int | None = None,
        max_part_size: int | None = None,
    ) -> None:
        self.max_files = max_files or self._get_int_env("FORM_MAX_FILES", 10)
        self.max_fields = max_fields or self._get_int_env("FORM_MAX_FIELDS", 100)
        self.max_part_size = max_part_size or self._get_int_env("FORM_MAX_PART_SIZE", 20 * 1024 * 1024)
        logger.debug("FormParser initialized with max_files: %d, max_fields: %d, max_part_size: %d", self.max_files, self.max_fields, self.max_part_size)

    @staticmethod
    def _get_int_env(name: str, default: int) -> int:
        """Read positive int from env var or fall back to default."""
        try:
            value = int(os.environ.get(name, str(default)))
            return max(0, value)
        except (ValueError, TypeError):
            return default

    async def parse(self, request: Request) -> FormData:
        """
        Parse the form with configured limits; requests without a form body yield an empty form.
        """
        content_type = request.headers.get("content-type", "")
        if not content_type.startswith(FORM_CONTENT_TYPES):
            return FormData()

        return await request.form(
            max_files=self.max_files,
            max_fields=self.max_fields,
            max_part_size=self.max_part_size,
        )

    @staticmethod
    def text_field(form: FormData, request: Request, name: str, required: bool = False) -> str | None:
        """
        Read a text field from the form, falling back to the query string.

        Raises:
            MissingFieldError: If ``required`` and the field is absent or empty.
        """
        value = form.get(name)
        if isinstance(value, UploadFile):
            value = None
        if value is None:
            value = request.query_params.get(name)

        if not value:
            if required:
                logger.error('Required field "%s" is missing', name)
                raise MissingFieldError(name)
            return None
        return str(value)

    @staticmethod
    async def file_field(form: FormData, name: str) -> tuple[bytes | None, str | None]:
        """
        Read an uploaded file from the form.

        Returns:
            The file content and its declared content type; (None, None) if absent or empty.
        """
        upload = form.get(name)
        if not isinstance(upload, UploadFile):
            return None, None

        content = await upload.read()
        if not content:
            logger.debug('Ignoring empty upload in field "%s"', name)
            return None, None
        return content, upload.content_type
