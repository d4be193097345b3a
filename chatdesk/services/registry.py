"""In-memory profile registry backed by the profile store and the secret store.

State is an immutable ``RegistrySnapshot`` replaced whole, only after the
corresponding store write has succeeded. Every replacement is published to
subscribers as a ``RegistryEvent``.
"""

import asyncio
import json
import os
from dataclasses import dataclass
from enum import Enum

import structlog
from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from chatdesk.core.exceptions import (
    CannotDeleteLastProfileError,
    CannotDeleteSelectedProfileError,
    ChatDeskError,
    ExportConsentRequiredError,
    GatewayNotConfiguredError,
    InvalidImportDataError,
    InvalidProfileEndpointError,
    NotFoundError,
)
from chatdesk.core.secrets import SALT_SIZE, SecretStore, derive_fernet_key
from chatdesk.schemas.profiles import (
    DEFAULT_API_ENDPOINT,
    DEFAULT_MODEL_NAME,
    DEFAULT_PROFILE_NAME,
    ModelParameters,
    Profile,
    ProfileExport,
    parse_http_url,
)
from chatdesk.services.gateway import Gateway
from chatdesk.services.profiles import ProfileService

logger = structlog.get_logger()

COPY_SUFFIX = " (Copy)"
IMPORTED_SUFFIX = " (Imported)"


class RegistryEventKind(str, Enum):
    LOADED = "loaded"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    DEFAULT_CHANGED = "default_changed"
    SELECTED = "selected"
    IMPORTED = "imported"
    RESET = "reset"


@dataclass(frozen=True)
class RegistrySnapshot:
    profiles: tuple[Profile, ...] = ()
    selected_id: str | None = None

    def get(self, profile_id: str) -> Profile | None:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None

    @property
    def selected(self) -> Profile | None:
        return self.get(self.selected_id) if self.selected_id else None

    @property
    def default(self) -> Profile | None:
        return next((p for p in self.profiles if p.is_default), None)


@dataclass(frozen=True)
class RegistryEvent:
    kind: RegistryEventKind
    snapshot: RegistrySnapshot


def _check_endpoint(api_endpoint: str) -> None:
    try:
        parse_http_url(api_endpoint)
    except ValueError as e:
        raise InvalidProfileEndpointError(str(e), details={"endpoint": api_endpoint}) from e


def factory_default_profile(profile_id: str | None = None) -> Profile:
    fields = {"id": profile_id} if profile_id else {}
    return Profile(
        name=DEFAULT_PROFILE_NAME,
        model_name=DEFAULT_MODEL_NAME,
        api_endpoint=DEFAULT_API_ENDPOINT,
        is_default=True,
        parameters=ModelParameters(),
        **fields,
    )


class ProfileRegistry:
    def __init__(self, store: ProfileService, secrets: SecretStore, gateway: Gateway | None = None):
        self._store = store
        self._secrets = secrets
        self._gateway = gateway
        self._snapshot = RegistrySnapshot()
        self._lock = asyncio.Lock()
        self._subscribers: list[asyncio.Queue] = []

    # ── Accessors ────────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    @property
    def profiles(self) -> tuple[Profile, ...]:
        return self._snapshot.profiles

    @property
    def selected(self) -> Profile | None:
        return self._snapshot.selected

    def get(self, profile_id: str) -> Profile | None:
        return self._snapshot.get(profile_id)

    async def get_secret(self, profile_id: str) -> str | None:
        return await asyncio.to_thread(self._secrets.get, self._secrets.key_for(profile_id))

    def subscribe(self) -> asyncio.Queue:
        """Queue that receives a ``RegistryEvent`` for every published change."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def load(self) -> RegistrySnapshot:
        """Read every profile, creating the factory default when the store is empty.

        A stored set without exactly one default is repaired by promoting the
        first profile (by name) that claims it, or the first profile overall.
        """
        async with self._lock:
            profiles = await self._store.list_profiles()
            if not profiles:
                default = factory_default_profile()
                await self._insert(default, "")
                logger.info("default_profile_created", profile_id=default.id)
                profiles = await self._store.list_profiles()

            defaults = [p for p in profiles if p.is_default]
            if len(defaults) != 1:
                repaired = defaults[0] if defaults else profiles[0]
                await self._store.set_default_profile(repaired.id)
                logger.warning("default_profile_repaired", profile_id=repaired.id, previous_defaults=len(defaults))
                profiles = await self._store.list_profiles()

            loaded = RegistrySnapshot(tuple(profiles))
            self._publish(RegistryEventKind.LOADED, RegistrySnapshot(loaded.profiles, loaded.default.id))
            logger.info("profiles_loaded", count=len(profiles), selected=loaded.default.id)
            return self._snapshot

    async def create(
        self,
        name: str,
        api_endpoint: str,
        api_key: str | None,
        model_name: str,
        parameters: ModelParameters | None = None,
        is_default: bool = False,
    ) -> Profile:
        """Create a profile. The first profile, or one created as default, becomes selected."""
        async with self._lock:
            profile = await self._create(name, api_endpoint, api_key, model_name, parameters, is_default)
            selected_id = profile.id if profile.is_default else self._snapshot.selected_id
            await self._refresh(RegistryEventKind.CREATED, selected_id)
            return profile

    async def update(
        self,
        profile_id: str,
        *,
        name: str | None = None,
        api_endpoint: str | None = None,
        api_key: str | None = None,
        model_name: str | None = None,
        parameters: ModelParameters | None = None,
        is_default: bool | None = None,
    ) -> Profile:
        """Patch a profile. An empty or missing ``api_key`` keeps the stored secret.

        ``is_default=True`` promotes the profile (and selects it); the flag is
        never cleared here, so the set can't drop to zero defaults.
        """
        if api_endpoint is not None:
            _check_endpoint(api_endpoint)
        async with self._lock:
            current = await self._store.get_profile(profile_id)
            if current is None:
                raise NotFoundError(f"Profile {profile_id} not found.")

            changes = {
                "name": name,
                "api_endpoint": api_endpoint,
                "model_name": model_name,
                "parameters": parameters,
            }
            promote = bool(is_default) and not current.is_default
            updated = current.model_copy(
                update={k: v for k, v in changes.items() if v is not None}
                | {"is_default": current.is_default or promote}
            )
            await self._store.update_profile(updated)
            if api_key:
                await asyncio.to_thread(self._secrets.set, self._secrets.key_for(profile_id), api_key)

            selected_id = profile_id if promote else self._snapshot.selected_id
            kind = RegistryEventKind.DEFAULT_CHANGED if promote else RegistryEventKind.UPDATED
            await self._refresh(kind, selected_id)
            logger.info("profile_updated", profile_id=profile_id, promoted=promote)
            return updated

    async def delete(self, profile_id: str) -> None:
        """Delete a profile that is neither the last one nor the selected one."""
        async with self._lock:
            if len(self._snapshot.profiles) <= 1:
                raise CannotDeleteLastProfileError()
            if profile_id == self._snapshot.selected_id:
                raise CannotDeleteSelectedProfileError()

            await self._store.delete_profile(profile_id)
            await asyncio.to_thread(self._secrets.delete, self._secrets.key_for(profile_id))
            await self._refresh(RegistryEventKind.DELETED, self._snapshot.selected_id)

    async def set_default(self, profile_id: str) -> Profile:
        async with self._lock:
            await self._store.set_default_profile(profile_id)
            await self._refresh(RegistryEventKind.DEFAULT_CHANGED, profile_id)
            return self._snapshot.selected

    async def select(self, profile_id: str) -> Profile:
        """Make a profile the active one without touching the default flag."""
        async with self._lock:
            profile = self._snapshot.get(profile_id)
            if profile is None:
                raise NotFoundError(f"Profile {profile_id} not found.")
            self._publish(RegistryEventKind.SELECTED, RegistrySnapshot(self._snapshot.profiles, profile_id))
            return profile

    async def duplicate(self, profile_id: str) -> Profile:
        """Copy a profile and its secret under ``"<name> (Copy)"``; the copy is never default."""
        async with self._lock:
            source = await self._store.get_profile(profile_id)
            if source is None:
                raise NotFoundError(f"Profile {profile_id} not found.")
            secret = await asyncio.to_thread(self._secrets.get, self._secrets.key_for(profile_id))
            copy = await self._create(
                source.name + COPY_SUFFIX,
                source.api_endpoint,
                secret,
                source.model_name,
                source.parameters.model_copy(),
                False,
            )
            await self._refresh(RegistryEventKind.CREATED, self._snapshot.selected_id)
            return copy

    async def reset(self) -> RegistrySnapshot:
        """Drop every non-default profile and restore the default to factory settings."""
        async with self._lock:
            profiles = await self._store.list_profiles()
            default = next((p for p in profiles if p.is_default), None)
            for profile in profiles:
                if profile is default:
                    continue
                await self._store.delete_profile(profile.id)
                await asyncio.to_thread(self._secrets.delete, self._secrets.key_for(profile.id))

            if default is None:
                default = factory_default_profile()
                await self._insert(default, "")
            else:
                default = factory_default_profile(default.id)
                await self._store.update_profile(default)
                await asyncio.to_thread(self._secrets.set, self._secrets.key_for(default.id), "")

            await self._refresh(RegistryEventKind.RESET, default.id)
            logger.info("profiles_reset", removed=len(profiles) - 1)
            return self._snapshot

    # ── Import / export ──────────────────────────────────────────────────────

    async def export_all(self, confirm_plaintext: bool = False, passphrase: str | None = None) -> bytes:
        """Serialize every profile, API key included.

        Without a passphrase the output is a plaintext JSON array and requires
        ``confirm_plaintext=True``. With one it is a 16-byte salt followed by
        a Fernet token.
        """
        if not passphrase and not confirm_plaintext:
            raise ExportConsentRequiredError()

        entries = []
        for profile in await self._store.list_profiles():
            secret = await asyncio.to_thread(self._secrets.get, self._secrets.key_for(profile.id))
            entries.append(
                ProfileExport(
                    name=profile.name,
                    api_endpoint=profile.api_endpoint,
                    api_key=secret or "",
                    model_name=profile.model_name,
                    parameters=profile.parameters,
                    is_default=profile.is_default,
                ).model_dump(by_alias=True)
            )
        data = json.dumps(entries, indent=2).encode("utf-8")

        if passphrase:
            salt = os.urandom(SALT_SIZE)
            data = salt + Fernet(derive_fernet_key(passphrase, salt)).encrypt(data)
        else:
            logger.warning("profiles_exported_plaintext", count=len(entries))
        logger.info("profiles_exported", count=len(entries), encrypted=bool(passphrase))
        return data

    async def import_all(self, blob: bytes | str, passphrase: str | None = None) -> list[Profile]:
        """Add the profiles in an export blob.

        Entries that fail validation are skipped. A name already in use gets
        ``" (Imported)"`` appended. Imported profiles only become default when
        the registry was empty.
        """
        raw = blob.encode("utf-8") if isinstance(blob, str) else blob
        if passphrase:
            try:
                raw = Fernet(derive_fernet_key(passphrase, raw[:SALT_SIZE])).decrypt(raw[SALT_SIZE:])
            except (InvalidToken, ValueError) as e:
                raise InvalidImportDataError("Wrong passphrase or corrupt export file.") from e
        try:
            entries = json.loads(raw)
        except ValueError as e:
            raise InvalidImportDataError(f"Export file is not valid JSON: {e}") from e
        if not isinstance(entries, list):
            raise InvalidImportDataError("Export file must contain a JSON array of profiles.")

        async with self._lock:
            names = {p.name for p in await self._store.list_profiles()}
            imported: list[Profile] = []
            skipped = 0
            for index, entry in enumerate(entries):
                try:
                    data = ProfileExport.model_validate(entry)
                except ValidationError as e:
                    skipped += 1
                    logger.warning("profile_import_entry_skipped", index=index, errors=e.error_count())
                    continue

                name = data.name + IMPORTED_SUFFIX if data.name in names else data.name
                profile = await self._create(
                    name, data.api_endpoint, data.api_key, data.model_name, data.parameters, False
                )
                names.add(name)
                imported.append(profile)

            selected_id = self._snapshot.selected_id
            if selected_id is None and imported:
                selected_id = next((p.id for p in imported if p.is_default), imported[0].id)
            await self._refresh(RegistryEventKind.IMPORTED, selected_id)
            logger.info("profiles_imported", imported=len(imported), skipped=skipped)
            return imported

    async def test_connection(self, api_endpoint: str, api_key: str | None, model_name: str) -> bool:
        """Probe unsaved settings through the gateway's adapter selection; no state changes."""
        if self._gateway is None:
            raise GatewayNotConfiguredError("Profile registry has no gateway to probe with.")
        return await self._gateway.probe(api_endpoint, api_key, model_name)

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _create(
        self,
        name: str,
        api_endpoint: str,
        api_key: str | None,
        model_name: str,
        parameters: ModelParameters | None,
        is_default: bool,
    ) -> Profile:
        _check_endpoint(api_endpoint)
        first = not await self._store.list_profiles()
        profile = Profile(
            name=name,
            api_endpoint=api_endpoint,
            model_name=model_name,
            is_default=is_default or first,
            parameters=parameters or ModelParameters(),
        )
        await self._insert(profile, api_key or "")
        logger.info("profile_created", profile_id=profile.id, model=model_name, is_default=profile.is_default)
        return profile

    async def _insert(self, profile: Profile, secret: str) -> None:
        """Write the secret, then the row; a failed row write removes the secret again."""
        key = self._secrets.key_for(profile.id)
        await asyncio.to_thread(self._secrets.set, key, secret)
        try:
            await self._store.save_profile(profile)
        except ChatDeskError:
            await asyncio.to_thread(self._secrets.delete, key)
            raise

    async def _refresh(self, kind: RegistryEventKind, selected_id: str | None) -> None:
        snapshot = RegistrySnapshot(tuple(await self._store.list_profiles()), selected_id)
        if snapshot.selected is None:
            default = snapshot.default
            snapshot = RegistrySnapshot(snapshot.profiles, default.id if default else None)
        self._publish(kind, snapshot)

    def _publish(self, kind: RegistryEventKind, snapshot: RegistrySnapshot) -> None:
        self._snapshot = snapshot
        event = RegistryEvent(kind, snapshot)
        for queue in self._subscribers:
            queue.put_nowait(event)
