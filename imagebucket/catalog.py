"""Bucket catalog assembly and upload coordination.

A catalog is built per request by folding over a single bucket listing.
Each non-folder object is turned into a :class:`CatalogEntry`; entries that
do not match the filter term are marked hidden and dropped before the result
is returned. Access URLs are only minted for entries that will be shown.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .storage import ObjectStoreError, StoredObject, sanitize_log_value


logger = logging.getLogger("imagebucket.catalog")

TAGS_KEY = "tags"


class CatalogError(Exception):
    """Business-rule violation found while cataloging the bucket."""

    message = "Encountered an invalid bucket object"

    def __init__(self, file_name: Optional[str] = None) -> None:
        super().__init__(self.message)
        self.file_name = file_name


class FileWithNoName(CatalogError):
    message = "Encountered bucket objects with no name"


class MultipleTagsWithSameName(CatalogError):
    message = "Encountered a file with a more than one tag named 'tags'"


class PartialUploadError(ObjectStoreError):
    """The object body was stored but its tag set could not be written."""

    def __init__(self, file_name: str, cause: ObjectStoreError) -> None:
        super().__init__(
            "put_tags",
            f"Object '{file_name}' was stored but its tags were not written: {cause}",
            file_name=file_name,
        )
        self.cause = cause


@dataclass
class CatalogEntry:
    file_name: str
    checksum: str = ""
    tag_string: str = ""
    access_url: str = ""
    hidden: bool = False

    def to_dict(self) -> Dict[str, str]:
        return {
            "fileName": self.file_name,
            "presignedUrl": self.access_url,
            "tags": self.tag_string,
            "eTag": self.checksum,
        }


@dataclass
class CatalogResult:
    """Outcome of :func:`build_catalog`: visible entries or the first error."""

    entries: List[CatalogEntry] = field(default_factory=list)
    error: Optional[CatalogError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> List[CatalogEntry]:
        if self.error is not None:
            raise self.error
        return self.entries


def matches(file_name: str, tag_string: str, term: Optional[str]) -> bool:
    """Return True when *term* is empty or occurs in the tags or the name."""

    if not term:
        return True
    return term in tag_string or term in file_name


def _select_tag_string(tags, file_name: str) -> str:
    values = [tag.value for tag in tags if tag.key == TAGS_KEY]
    if len(values) > 1:
        raise MultipleTagsWithSameName(file_name)
    return values[0] if values else ""


def build_entry(store, stored: StoredObject, term: Optional[str]) -> CatalogEntry:
    if stored.key is None:
        raise FileWithNoName()

    file_name = stored.key
    tag_string = _select_tag_string(store.get_tags(file_name), file_name)
    entry = CatalogEntry(
        file_name=file_name,
        checksum=stored.checksum or "",
        tag_string=tag_string,
    )
    if matches(file_name, tag_string, term):
        entry.access_url = store.get_access_url(file_name)
    else:
        entry.hidden = True
    return entry


def build_catalog(store, term: Optional[str] = None) -> CatalogResult:
    listing = store.list_objects()
    if not listing:
        return CatalogResult()

    entries: List[CatalogEntry] = []
    for stored in listing:
        if stored.is_folder_marker:
            continue
        try:
            entries.append(build_entry(store, stored, term))
        except CatalogError as error:
            logger.warning(
                "catalog_aborted reason=%s key=%s",
                type(error).__name__,
                sanitize_log_value(error.file_name),
            )
            return CatalogResult(error=error)

    visible = [entry for entry in entries if not entry.hidden]
    logger.info(
        "catalog_built listed=%d visible=%d filtered=%s",
        len(listing),
        len(visible),
        bool(term),
    )
    return CatalogResult(entries=visible)


def upload(store, file_name: str, data: bytes, tag_string: str) -> None:
    """Store *data* under *file_name* and replace its tags with *tag_string*.

    The two writes are not atomic. When the tag write fails the object stays
    in the bucket untagged and :class:`PartialUploadError` is raised.
    """

    store.put_object(file_name, data)
    try:
        store.put_tags(file_name, [(TAGS_KEY, tag_string)])
    except ObjectStoreError as error:
        logger.error(
            "upload_left_untagged key=%s error=%s",
            sanitize_log_value(file_name),
            sanitize_log_value(str(error)),
        )
        raise PartialUploadError(file_name, error) from error
