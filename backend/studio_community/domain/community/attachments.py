"""Attachment helpers for thread messages."""

from __future__ import annotations

from typing import Iterable, List, Mapping

import ulid

from studio_community.domain.community.exceptions import InvalidMessage
from studio_community.domain.community.models import AttachmentRef
from studio_community.settings import settings

_ALLOWED_PREFIXES = ("image/", "text/")
_ALLOWED_TYPES = frozenset(
	{
		"application/pdf",
		"application/msword",
		"application/vnd.openxmlformats-officedocument.wordprocessingml.document",
	}
)


def _media_type_allowed(media_type: str) -> bool:
	lowered = media_type.lower()
	return lowered.startswith(_ALLOWED_PREFIXES) or lowered in _ALLOWED_TYPES


def normalize_attachments(items: Iterable[Mapping[str, object] | AttachmentRef] | None) -> List[AttachmentRef]:
	"""Validate and normalise attachment references sent by clients.

	Each attachment may include:
	- attachment_id (optional ULID string, generated when missing)
	- media_type (required; images, text, PDF or Word documents)
	- size_bytes (optional, bounded by ATTACHMENT_MAX_BYTES)
	- file_name (optional)
	- remote_url (optional, for already uploaded assets)
	"""

	normalized: List[AttachmentRef] = []
	if not items:
		return normalized
	for entry in items:
		if isinstance(entry, AttachmentRef):
			entry = {
				"attachment_id": entry.attachment_id,
				"media_type": entry.media_type,
				"size_bytes": entry.size_bytes,
				"file_name": entry.file_name,
				"remote_url": entry.remote_url,
			}
		media_type = str(entry.get("media_type") or "").strip()
		if not media_type or not _media_type_allowed(media_type):
			raise InvalidMessage("unsupported_media_type")
		size_raw = entry.get("size_bytes")
		size_bytes = None
		if size_raw is not None:
			try:
				size_bytes = int(size_raw)  # type: ignore[arg-type]
			except (TypeError, ValueError) as exc:
				raise InvalidMessage("invalid_attachment_size") from exc
		if size_bytes is not None and (size_bytes < 0 or size_bytes > settings.attachment_max_bytes):
			raise InvalidMessage("attachment_too_large")
		normalized.append(
			AttachmentRef(
				attachment_id=str(entry.get("attachment_id") or "") or str(ulid.new()),
				media_type=media_type,
				size_bytes=size_bytes,
				file_name=str(entry.get("file_name")) if entry.get("file_name") else None,
				remote_url=str(entry.get("remote_url")) if entry.get("remote_url") else None,
			)
		)
	if len(normalized) > settings.attachment_max_count:
		raise InvalidMessage("too_many_attachments")
	return normalized
