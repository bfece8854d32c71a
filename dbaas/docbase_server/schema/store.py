"""
Schema Store for Docbase.

The SchemaStore is the authoritative registry of class schemas. It caches
the persisted schema collection as

    data:  className -> {field: StorageType}
    perms: className -> CLP document

and owns every schema mutation: class creation, field commitment, field
deletion and permission changes.

Persisted row layout (one row per class):

    {
        "_id": "Book",
        "_metadata": {"class_permissions": {"find": {"*": true}}},
        "objectId": "string",
        "createdAt": "date",
        "updatedAt": "date",
        "title": "string",
        "author": "*_User",
    }

Invariants:
    - Every mutation writes the persisted row first, then reloads the whole
      cache (read-your-writes, no cross-request lock)
    - Field types are append-only: a committed type never changes in place
    - At most one GeoPoint field per class
    - Validation failures are raised before any persisted write
    - Reload failures propagate to the calling operation

Field commitment is two-phase:
    1. try-commit: upsert {key: type} guarded by {key: {"$exists": False}},
       then reload
    2. verify: the reloaded type must equal the requested one; a concurrent
       committer that won the race surfaces as IncorrectTypeError

How to change safely:
    - Never change persisted storage tokens (see types.py)
    - Keep all pre-write validation in _build_schema_row / validate_object
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import (
    ChangedImmutableFieldError,
    ClassNotEmptyError,
    IncorrectTypeError,
    InvalidClassNameError,
    InvalidKeyNameError,
    MissingRequiredFieldError,
)
from ..storage.base import DocumentStore, DuplicateKeyError
from ..storage.transform import POINTER_COLUMN_PREFIX
from .defaults import DEFAULT_SCHEMA_DEFAULTS, SchemaDefaults
from .mapper import infer_type, to_api_type, to_storage_type
from .permissions import (
    PermissionChecker,
    merge_with_default_permissions,
    validate_class_level_permissions,
)
from .types import OBJECT, StorageType
from .validation import (
    class_name_is_valid,
    field_name_is_valid,
    field_name_is_valid_for_class,
    invalid_class_name_message,
    join_collection_name,
)

logger = logging.getLogger(__name__)

METADATA_KEY = "_metadata"
CLASS_PERMISSIONS_KEY = "class_permissions"
_NON_FIELD_KEYS = ("_id", METADATA_KEY, "_client_permissions")


def _is_delete_op(value: Any) -> bool:
    return isinstance(value, Mapping) and value.get("__op") == "Delete"


class SchemaStore:
    """Reloadable registry of class schemas backed by the schema collection.

    Thread-safety:
        The cache is replaced wholesale on reload. Concurrent mutators on
        the same field are arbitrated by the storage upsert guard.

    Attributes:
        defaults: Static default tables
        fingerprint: SHA-256 of the cached registry (changes on schema change)

    Example:
        >>> store = await SchemaStore.load(document_store)
        >>> await store.add_class_if_not_exists("Book", {"title": {"type": "String"}})
        >>> await store.validate_object("Book", {"title": "Dune", "pages": 412})
        >>> store.get_expected_type("Book", "pages")
        StorageType(kind=<FieldKind.NUMBER: 'number'>, target_class=None)
    """

    def __init__(
        self,
        storage: DocumentStore,
        defaults: SchemaDefaults = DEFAULT_SCHEMA_DEFAULTS,
        checker: Optional[PermissionChecker] = None,
    ) -> None:
        self._storage = storage
        self.defaults = defaults
        self._checker = checker or PermissionChecker()
        self._data: Dict[str, Dict[str, StorageType]] = {}
        self._perms: Dict[str, Dict[str, Any]] = {}
        self._fingerprint: Optional[str] = None

    @classmethod
    async def load(
        cls,
        storage: DocumentStore,
        defaults: SchemaDefaults = DEFAULT_SCHEMA_DEFAULTS,
        checker: Optional[PermissionChecker] = None,
    ) -> SchemaStore:
        """Create a store and populate its cache."""
        store = cls(storage, defaults, checker)
        await store.reload()
        return store

    @property
    def fingerprint(self) -> Optional[str]:
        return self._fingerprint

    @property
    def class_names(self) -> List[str]:
        return sorted(self._data)

    # Cache

    async def reload(self) -> None:
        """Replace the cache with the persisted schema collection.

        Raises:
            StorageError: If the schema collection cannot be read
            InvalidJSONError: If a persisted row holds an unknown type token
        """
        rows = await self._storage.get_all_schemas()
        data: Dict[str, Dict[str, StorageType]] = {}
        perms: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            class_name = row.get("_id")
            if not class_name:
                continue
            data[class_name] = {
                key: StorageType.from_token(value)
                for key, value in row.items()
                if key not in _NON_FIELD_KEYS
            }
            metadata = row.get(METADATA_KEY)
            if isinstance(metadata, Mapping) and metadata.get(CLASS_PERMISSIONS_KEY) is not None:
                perms[class_name] = dict(metadata[CLASS_PERMISSIONS_KEY])
        self._data = data
        self._perms = perms
        self._fingerprint = self._compute_fingerprint()
        logger.debug(f"Reloaded schema: {len(data)} classes ({self._fingerprint})")

    def _compute_fingerprint(self) -> str:
        canonical = {
            "classes": {
                name: {key: t.to_token() for key, t in fields.items()}
                for name, fields in self._data.items()
            },
            "permissions": self._perms,
        }
        serialized = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(serialized.encode()).hexdigest()}"

    # Reads

    async def has_class(self, class_name: str) -> bool:
        """Whether the class exists (reloads first)."""
        await self.reload()
        return class_name in self._data

    def has_keys(self, class_name: str, keys: Iterable[str]) -> bool:
        fields = self._data.get(class_name)
        if fields is None:
            return False
        return all(key in fields for key in keys)

    def get_expected_type(self, class_name: str, key: str) -> Optional[StorageType]:
        return self._data.get(class_name, {}).get(key)

    def get_class_level_permissions(self, class_name: str) -> Optional[Dict[str, Any]]:
        return self._perms.get(class_name)

    async def redirect_class_name_for_key(self, class_name: str, key: str) -> str:
        """Target class of a relation or pointer field, else the class itself."""
        await self.reload()
        expected = self.get_expected_type(class_name, key)
        if expected is not None and (expected.is_relation or expected.is_pointer):
            return expected.target_class
        return class_name

    def get_one_schema(self, class_name: str) -> Dict[str, Any]:
        """Wire representation of one class.

        Raises:
            InvalidClassNameError: If the class does not exist
        """
        fields = self._data.get(class_name)
        if fields is None:
            raise InvalidClassNameError(f"Class {class_name} does not exist.")
        api_fields = {key: to_api_type(t) for key, t in fields.items()}
        for key, api_type in self.defaults.universal_columns.items():
            api_fields[key] = dict(api_type)
        return {
            "className": class_name,
            "fields": api_fields,
            "classLevelPermissions": merge_with_default_permissions(
                self._perms.get(class_name), self.defaults
            ),
        }

    def get_all_schemas(self) -> List[Dict[str, Any]]:
        return [self.get_one_schema(name) for name in self.class_names]

    # Class lifecycle

    def _build_schema_row(
        self,
        class_name: str,
        fields: Mapping[str, Any],
        class_level_permissions: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """Validate a class definition and build its persisted row.

        Raises:
            InvalidClassNameError, InvalidKeyNameError,
            ChangedImmutableFieldError, IncorrectTypeError,
            MissingRequiredFieldError, InvalidJSONError
        """
        if not class_name_is_valid(class_name, self.defaults):
            raise InvalidClassNameError(invalid_class_name_message(class_name))
        for field_name in fields:
            if not field_name_is_valid(field_name):
                raise InvalidKeyNameError(f"invalid field name: {field_name}")
            if not field_name_is_valid_for_class(field_name, class_name, self.defaults):
                raise ChangedImmutableFieldError(f"field {field_name} cannot be added")

        row: Dict[str, Any] = dict(self.defaults.universal_tokens)
        for field_name, api_type in self.defaults.columns_for(class_name).items():
            row[field_name] = to_storage_type(api_type, self.defaults).to_token()
        for field_name, api_type in fields.items():
            row[field_name] = to_storage_type(api_type, self.defaults).to_token()

        geo_points = [key for key, token in row.items() if token == "geopoint"]
        if len(geo_points) > 1:
            raise IncorrectTypeError(
                "currently, only one GeoPoint field may exist in an object. "
                f"Adding {geo_points[1]} when {geo_points[0]} already exists.",
                details={"className": class_name, "fields": geo_points},
            )

        validate_class_level_permissions(class_level_permissions, self.defaults)
        if class_level_permissions is not None:
            row[METADATA_KEY] = {CLASS_PERMISSIONS_KEY: dict(class_level_permissions)}
        return row

    async def add_class_if_not_exists(
        self,
        class_name: str,
        fields: Optional[Mapping[str, Any]] = None,
        class_level_permissions: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create a class.

        Args:
            class_name: Name of the new class
            fields: Wire-form field types, e.g. {"title": {"type": "String"}}
            class_level_permissions: Optional CLP document

        Returns:
            The wire schema of the created class

        Raises:
            InvalidClassNameError: If the class exists or the name is invalid
            InvalidKeyNameError, ChangedImmutableFieldError,
            IncorrectTypeError, MissingRequiredFieldError, InvalidJSONError
        """
        if class_name in self._data:
            raise InvalidClassNameError(f"Class {class_name} already exists.")

        row = self._build_schema_row(class_name, fields or {}, class_level_permissions)
        try:
            await self._storage.add_schema_row(class_name, row)
        except DuplicateKeyError as e:
            raise InvalidClassNameError(f"Class {class_name} already exists.") from e

        logger.info(f"Added class: {class_name}", extra={"class_name": class_name})
        await self.reload()
        return self.get_one_schema(class_name)

    async def update_class(
        self,
        class_name: str,
        submitted_fields: Mapping[str, Any],
        class_level_permissions: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Add and delete fields of an existing class.

        Each submitted field is either a wire type (add) or {"__op": "Delete"}.
        Deletions run first, then additions are committed field by field,
        then the CLP is replaced when one is given.

        Returns:
            The wire schema after the update

        Raises:
            InvalidClassNameError: If the class does not exist
            ClassNotEmptyError: Adding an existing field or deleting a missing one
            ChangedImmutableFieldError: Deleting a default column
        """
        if not await self.has_class(class_name):
            raise InvalidClassNameError(f"Class {class_name} does not exist.")
        existing = self._data[class_name]

        deleted: List[str] = []
        added: List[str] = []
        for name, value in submitted_fields.items():
            is_delete = _is_delete_op(value)
            if name in existing and not is_delete:
                raise ClassNotEmptyError(f"Field {name} exists, cannot update.")
            if name not in existing and is_delete:
                raise ClassNotEmptyError(f"Field {name} does not exist, cannot delete.")
            if is_delete:
                if self.defaults.is_default_column(name, class_name):
                    raise ChangedImmutableFieldError(f"field {name} cannot be changed")
                deleted.append(name)
            else:
                added.append(name)

        merged = {
            name: to_api_type(t)
            for name, t in existing.items()
            if name not in deleted and not self.defaults.is_default_column(name, class_name)
        }
        merged.update({name: submitted_fields[name] for name in added})
        row = self._build_schema_row(class_name, merged, class_level_permissions)

        for name in deleted:
            await self.delete_field(name, class_name)
        await self.reload()

        for name in added:
            await self.validate_field(class_name, name, StorageType.from_token(row[name]))

        if class_level_permissions is not None:
            await self.set_permissions(class_name, class_level_permissions)

        logger.info(
            f"Updated class: {class_name}",
            extra={"class_name": class_name, "added": added, "deleted": deleted},
        )
        return self.get_one_schema(class_name)

    async def delete_field(self, field_name: str, class_name: str) -> None:
        """Remove a field from a class and its data from every object.

        Relation fields drop their join collection; other fields are unset
        on every document (pointer columns under their "_p_" name).

        Raises:
            InvalidClassNameError: Invalid name or missing class
            InvalidKeyNameError: Invalid field name
            ChangedImmutableFieldError: Default column
            ClassNotEmptyError: Field does not exist
        """
        if not class_name_is_valid(class_name, self.defaults):
            raise InvalidClassNameError(invalid_class_name_message(class_name))
        if not field_name_is_valid(field_name):
            raise InvalidKeyNameError(f"invalid field name: {field_name}")
        if not field_name_is_valid_for_class(field_name, class_name, self.defaults):
            raise ChangedImmutableFieldError(f"field {field_name} cannot be changed")

        if not await self.has_class(class_name):
            raise InvalidClassNameError(f"Class {class_name} does not exist.")

        storage_type = self._data[class_name].get(field_name)
        if storage_type is None:
            raise ClassNotEmptyError(f"Field {field_name} does not exist, cannot delete.")

        if storage_type.is_relation:
            await self._storage.drop_collection(join_collection_name(field_name, class_name))
        else:
            column = field_name
            if storage_type.is_pointer:
                column = POINTER_COLUMN_PREFIX + field_name
            await self._storage.update_many(class_name, {}, {"$unset": {column: ""}})

        await self._storage.update_schema_row(class_name, {"$unset": {field_name: ""}})
        logger.info(
            f"Deleted field: {class_name}.{field_name}",
            extra={"class_name": class_name, "field": field_name, "type": str(storage_type)},
        )
        await self.reload()

    async def set_permissions(
        self,
        class_name: str,
        perms: Optional[Mapping[str, Any]],
    ) -> None:
        """Replace (or, with None, clear) the CLP of a class.

        Raises:
            InvalidJSONError: If the CLP document is malformed
        """
        validate_class_level_permissions(perms, self.defaults)
        if perms is None:
            update = {"$unset": {METADATA_KEY: ""}}
        else:
            update = {"$set": {METADATA_KEY: {CLASS_PERMISSIONS_KEY: dict(perms)}}}
        await self._storage.update_schema_row(class_name, update)
        logger.info(f"Set permissions: {class_name}", extra={"class_name": class_name})
        await self.reload()

    async def validate_class_name(self, class_name: str) -> None:
        """Ensure a class exists, creating an empty one if needed.

        Raises:
            InvalidClassNameError: Invalid name, or the class is still
                missing after the create-and-reload
        """
        if class_name in self._data:
            return
        row = self._build_schema_row(class_name, {}, None)
        try:
            await self._storage.add_schema_row(class_name, row)
            logger.info(f"Auto-created class: {class_name}", extra={"class_name": class_name})
        except DuplicateKeyError:
            logger.debug(f"Class {class_name} created concurrently")
        await self.reload()
        if class_name not in self._data:
            raise InvalidClassNameError(f"Class {class_name} could not be created.")

    # Field commitment

    def _resolve_key(
        self,
        key: str,
        storage_type: Optional[StorageType],
    ) -> Tuple[str, Optional[StorageType]]:
        if isinstance(key, str) and "." in key:
            key, storage_type = key.split(".", 1)[0], OBJECT
        if not field_name_is_valid(key):
            raise InvalidKeyNameError(f"invalid field name: {key}")
        return key, storage_type

    def _check_committed(
        self,
        class_name: str,
        key: str,
        storage_type: Optional[StorageType],
    ) -> bool:
        """True if the field is committed compatibly; raises on conflict."""
        expected = self.get_expected_type(class_name, key)
        if expected is None:
            return False
        if storage_type is not None and expected != storage_type:
            raise IncorrectTypeError(
                f"schema mismatch for {class_name}.{key}; "
                f"expected {expected} but got {storage_type}",
                details={
                    "className": class_name,
                    "field": key,
                    "expected": str(expected),
                    "actual": str(storage_type),
                },
            )
        return True

    async def _try_commit_field(
        self,
        class_name: str,
        key: str,
        storage_type: StorageType,
    ) -> bool:
        if storage_type.is_geopoint:
            for other, t in self._data.get(class_name, {}).items():
                if t.is_geopoint and other != key:
                    raise IncorrectTypeError(
                        "currently, only one GeoPoint field may exist in an object. "
                        f"Adding {key} when {other} already exists.",
                        details={"className": class_name, "fields": [other, key]},
                    )

        written = await self._storage.upsert_schema_row(
            class_name,
            {key: {"$exists": False}},
            {"$set": {key: storage_type.to_token()}},
        )
        if not written:
            logger.warning(
                f"Field {class_name}.{key} was committed concurrently",
                extra={"class_name": class_name, "field": key},
            )
        await self.reload()
        return written

    def _verify_committed_field(
        self,
        class_name: str,
        key: str,
        storage_type: StorageType,
    ) -> None:
        if self.get_expected_type(class_name, key) is None:
            raise IncorrectTypeError(
                f"could not add field {key}",
                details={"className": class_name, "field": key},
            )
        self._check_committed(class_name, key, storage_type)

    async def validate_field(
        self,
        class_name: str,
        key: str,
        storage_type: Optional[StorageType],
    ) -> None:
        """Commit a field type, or confirm it matches the committed one.

        A dotted key commits its root field as Object. A None type commits
        nothing.

        Raises:
            InvalidKeyNameError: If the key is not a valid field name
            IncorrectTypeError: On a type conflict, a second GeoPoint, or a
                commit that did not take
        """
        key, storage_type = self._resolve_key(key, storage_type)
        if self._check_committed(class_name, key, storage_type):
            return
        if storage_type is None:
            return

        written = await self._try_commit_field(class_name, key, storage_type)
        self._verify_committed_field(class_name, key, storage_type)
        if written:
            logger.info(
                f"Committed field: {class_name}.{key} as {storage_type}",
                extra={"class_name": class_name, "field": key, "type": str(storage_type)},
            )

    # Object validation

    def validate_required_columns(
        self,
        class_name: str,
        obj: Mapping[str, Any],
        query: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Check the class's required columns against an object.

        On create every required column must be present; on update (the
        query names an objectId) a column is only missing when the object
        deletes it.

        Raises:
            MissingRequiredFieldError: Listing the missing columns
        """
        columns = self.defaults.required_columns.get(class_name) or ()
        is_update = bool(query) and query.get("objectId") is not None
        missing = []
        for column in columns:
            if is_update:
                if _is_delete_op(obj.get(column)):
                    missing.append(column)
            elif obj.get(column) is None:
                missing.append(column)
        if missing:
            raise MissingRequiredFieldError(f"{missing[0]} is required.", missing=missing)

    async def validate_object(
        self,
        class_name: str,
        obj: Mapping[str, Any],
        query: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Validate an object write against the schema, committing new fields.

        Universal columns (objectId, createdAt, updatedAt, ACL) are managed
        by storage and are not typed here.

        Raises:
            IncorrectTypeError: Two GeoPoint values, or a type conflict
            MissingRequiredFieldError: A required column is missing
            InvalidClassNameError, InvalidKeyNameError
        """
        inferred: List[Tuple[str, StorageType]] = []
        geo_fields: List[str] = []
        for key, value in obj.items():
            if value is None or key in self.defaults.universal_columns:
                continue
            storage_type = infer_type(value)
            if storage_type is None:
                continue
            if storage_type.is_geopoint:
                geo_fields.append(key)
                if len(geo_fields) > 1:
                    raise IncorrectTypeError(
                        "there can only be one geopoint field in a class",
                        details={"className": class_name, "fields": geo_fields},
                    )
            inferred.append((key, storage_type))

        self.validate_required_columns(class_name, obj, query)
        await self.validate_class_name(class_name)
        for key, storage_type in inferred:
            await self.validate_field(class_name, key, storage_type)

    def validate_permission(
        self,
        class_name: str,
        acl_group: Iterable[str],
        operation: str,
    ) -> None:
        """Authorize an operation against the cached CLP.

        Raises:
            PermissionDeniedError: If the CLP denies the ACL group
        """
        self._checker.check_permission_or_raise(
            class_name, self._perms.get(class_name), acl_group, operation
        )
