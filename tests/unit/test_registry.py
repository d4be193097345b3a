import json

import pytest

from chatdesk.core.exceptions import (
    CannotDeleteLastProfileError,
    CannotDeleteSelectedProfileError,
    ConstraintViolationError,
    ExportConsentRequiredError,
    InvalidImportDataError,
    InvalidProfileEndpointError,
    NotFoundError,
)
from chatdesk.schemas.profiles import DEFAULT_MODEL_NAME, DEFAULT_PROFILE_NAME, ModelParameters, Profile
from chatdesk.services.registry import ProfileRegistry, RegistryEventKind
from tests.conftest import OLLAMA_BASE, OPENAI_BASE


def _assert_single_default(registry: ProfileRegistry) -> None:
    assert sum(p.is_default for p in registry.profiles) == 1


async def _add(registry, name, key="sk-test", model="gpt-4o-mini", **kwargs):
    return await registry.create(name, f"{OPENAI_BASE}/v1/chat/completions", key, model, **kwargs)


class TestLoad:
    """Startup behaviour of the registry."""

    async def test_empty_store_gets_factory_default(self, profile_service, secret_store):
        registry = ProfileRegistry(profile_service, secret_store)
        snapshot = await registry.load()

        assert len(snapshot.profiles) == 1
        default = snapshot.profiles[0]
        assert default.name == DEFAULT_PROFILE_NAME
        assert default.model_name == DEFAULT_MODEL_NAME
        assert default.is_default
        assert snapshot.selected_id == default.id
        assert await registry.get_secret(default.id) == ""

    async def test_load_is_stable(self, registry):
        before = registry.snapshot
        after = await registry.load()
        assert after == before

    async def test_load_repairs_missing_default(self, profile_service, secret_store):
        await profile_service.save_profile(Profile(name="B", model_name="m", api_endpoint="http://x"))
        await profile_service.save_profile(Profile(name="A", model_name="m", api_endpoint="http://x"))

        registry = ProfileRegistry(profile_service, secret_store)
        snapshot = await registry.load()

        _assert_single_default(registry)
        assert snapshot.selected.name == "A"
        assert (await profile_service.get_default_profile()).name == "A"

    async def test_first_created_profile_is_forced_default(self, profile_service, secret_store):
        registry = ProfileRegistry(profile_service, secret_store)
        profile = await _add(registry, "Only")
        assert profile.is_default
        assert registry.selected.id == profile.id


class TestCreateUpdate:
    async def test_create_stores_secret_by_profile_id(self, registry, secret_store):
        profile = await _add(registry, "Work", key="sk-work")
        assert secret_store.get(f"api_key_{profile.id}") == "sk-work"
        assert not profile.is_default
        assert registry.selected.name == DEFAULT_PROFILE_NAME

    async def test_create_default_selects_it(self, registry):
        profile = await _add(registry, "Work", is_default=True)
        assert registry.selected.id == profile.id
        _assert_single_default(registry)

    async def test_failed_row_write_removes_secret(self, registry, secret_store, profile_service, monkeypatch):
        async def fail(profile):
            raise ConstraintViolationError()

        keys_before = set(secret_store._secrets)
        monkeypatch.setattr(profile_service, "save_profile", fail)
        with pytest.raises(ConstraintViolationError):
            await _add(registry, "Broken")
        assert set(secret_store._secrets) == keys_before
        assert len(registry.profiles) == 1

    async def test_create_rejects_endpoint_without_scheme_or_host(self, registry, secret_store):
        keys_before = set(secret_store._secrets)
        for endpoint in ("not a url", "ftp://example.com/v1", "http://"):
            with pytest.raises(InvalidProfileEndpointError):
                await registry.create("Bad", endpoint, "sk-test", "gpt-4o-mini")
        assert len(registry.profiles) == 1
        assert set(secret_store._secrets) == keys_before

    async def test_update_rejects_bad_endpoint(self, registry):
        profile = await _add(registry, "Work")
        with pytest.raises(InvalidProfileEndpointError):
            await registry.update(profile.id, api_endpoint="localhost:11434")
        assert registry.get(profile.id).api_endpoint == f"{OPENAI_BASE}/v1/chat/completions"

    async def test_update_unknown(self, registry):
        with pytest.raises(NotFoundError):
            await registry.update("missing", name="x")

    async def test_update_fields_and_secret(self, registry):
        profile = await _add(registry, "Work", key="sk-old")
        updated = await registry.update(
            profile.id,
            name="Work 2",
            api_key="sk-new",
            parameters=ModelParameters(temperature=0.1),
        )
        assert updated.name == "Work 2"
        assert registry.get(profile.id).parameters.temperature == 0.1
        assert await registry.get_secret(profile.id) == "sk-new"

    async def test_update_with_empty_secret_keeps_existing(self, registry):
        profile = await _add(registry, "Work", key="sk-keep")
        await registry.update(profile.id, name="Renamed", api_key="")
        await registry.update(profile.id, model_name="gpt-4o")
        assert await registry.get_secret(profile.id) == "sk-keep"

    async def test_update_promotes_to_default(self, registry):
        profile = await _add(registry, "Work")
        await registry.update(profile.id, is_default=True)
        assert registry.get(profile.id).is_default
        assert registry.selected.id == profile.id
        _assert_single_default(registry)

    async def test_update_cannot_clear_the_default(self, registry):
        default = registry.selected
        await registry.update(default.id, is_default=False)
        assert registry.get(default.id).is_default
        _assert_single_default(registry)


class TestDeleteAndDefault:
    async def test_cannot_delete_last_profile(self, registry):
        with pytest.raises(CannotDeleteLastProfileError):
            await registry.delete(registry.selected.id)

    async def test_cannot_delete_selected_profile(self, registry):
        other = await _add(registry, "Other")
        await registry.select(other.id)
        with pytest.raises(CannotDeleteSelectedProfileError):
            await registry.delete(other.id)

    async def test_delete_removes_profile_and_secret(self, registry, secret_store):
        other = await _add(registry, "Other", key="sk-other")
        await registry.delete(other.id)
        assert registry.get(other.id) is None
        assert secret_store.get(f"api_key_{other.id}") is None

    async def test_set_default_moves_flag_and_selection(self, registry):
        """Two profiles, P1 default; set_default(P2) flips both flags and selects P2."""
        p1 = registry.selected
        p2 = await _add(registry, "P2")

        await registry.set_default(p2.id)

        assert registry.get(p1.id).is_default is False
        assert registry.get(p2.id).is_default is True
        assert registry.selected.id == p2.id
        assert registry.snapshot.default.id == p2.id

    async def test_set_default_unknown(self, registry):
        with pytest.raises(NotFoundError):
            await registry.set_default("missing")
        _assert_single_default(registry)

    async def test_select_unknown(self, registry):
        with pytest.raises(NotFoundError):
            await registry.select("missing")

    async def test_exactly_one_default_through_a_sequence(self, registry):
        a = await _add(registry, "A")
        b = await _add(registry, "B", is_default=True)
        _assert_single_default(registry)
        await registry.update(a.id, is_default=True)
        _assert_single_default(registry)
        c = await _add(registry, "C")
        await registry.set_default(c.id)
        _assert_single_default(registry)
        await registry.update(b.id, name="B2")
        _assert_single_default(registry)
        assert registry.get(c.id).is_default


class TestDuplicate:
    async def test_duplicate_copies_fields_and_secret(self, registry):
        source = await _add(registry, "Work", key="sk-dup", parameters=ModelParameters(max_tokens=99))
        copy = await registry.duplicate(source.id)

        assert copy.id != source.id
        assert copy.name == "Work (Copy)"
        assert copy.parameters.max_tokens == 99
        assert copy.is_default is False
        assert await registry.get_secret(copy.id) == "sk-dup"

    async def test_duplicate_of_default_is_not_default(self, registry):
        copy = await registry.duplicate(registry.selected.id)
        assert not copy.is_default
        _assert_single_default(registry)

    async def test_duplicate_unknown(self, registry):
        with pytest.raises(NotFoundError):
            await registry.duplicate("missing")


class TestExportImport:
    async def test_plaintext_export_needs_consent(self, registry):
        with pytest.raises(ExportConsentRequiredError):
            await registry.export_all()

    async def test_plaintext_export_format(self, registry):
        await _add(registry, "Work", key="sk-work", parameters=ModelParameters(top_p=0.5))
        entries = json.loads(await registry.export_all(confirm_plaintext=True))

        work = next(e for e in entries if e["name"] == "Work")
        assert set(work) == {"name", "apiEndpoint", "apiKey", "modelName", "parameters", "isDefault"}
        assert work["apiKey"] == "sk-work"
        assert work["isDefault"] is False
        assert work["parameters"] == {
            "temperature": 0.7,
            "maxTokens": 2048,
            "topP": 0.5,
            "frequencyPenalty": 0.0,
            "presencePenalty": 0.0,
        }

    async def test_import_renames_collisions_and_skips_bad_entries(self, registry):
        blob = json.dumps([
            {
                "name": DEFAULT_PROFILE_NAME,
                "apiEndpoint": "https://api.openai.com/v1/chat/completions",
                "apiKey": "sk-imported",
                "modelName": "gpt-4o",
                "parameters": {"temperature": 1.0, "maxTokens": 100, "topP": 1.0,
                               "frequencyPenalty": 0.0, "presencePenalty": 0.0},
                "isDefault": True,
            },
            {"name": "Broken", "apiEndpoint": "http://x"},
            "not an object",
            {
                "name": "No URL",
                "apiEndpoint": "not a url",
                "apiKey": "",
                "modelName": "gpt-4o",
                "parameters": {"temperature": 1.0, "maxTokens": 100, "topP": 1.0,
                               "frequencyPenalty": 0.0, "presencePenalty": 0.0},
                "isDefault": False,
            },
            {
                "name": "Local",
                "apiEndpoint": f"{OLLAMA_BASE}/api/generate",
                "apiKey": "",
                "modelName": "ollama:llama2",
                "parameters": {"temperature": 0.2, "maxTokens": 256, "topP": 0.9,
                               "frequencyPenalty": 0.0, "presencePenalty": 0.0},
                "isDefault": False,
            },
        ])

        imported = await registry.import_all(blob)

        assert [p.name for p in imported] == [f"{DEFAULT_PROFILE_NAME} (Imported)", "Local"]
        assert "No URL" not in {p.name for p in registry.profiles}
        assert not any(p.is_default for p in imported)
        assert await registry.get_secret(imported[0].id) == "sk-imported"
        assert len(registry.profiles) == 3
        _assert_single_default(registry)

    async def test_import_rejects_non_array(self, registry):
        with pytest.raises(InvalidImportDataError):
            await registry.import_all('{"name": "x"}')
        with pytest.raises(InvalidImportDataError):
            await registry.import_all("not json at all")

    async def test_encrypted_roundtrip(self, registry, profile_service):
        await _add(registry, "Work", key="sk-enc")
        blob = await registry.export_all(passphrase="correct horse")
        assert b"sk-enc" not in blob

        fresh = ProfileRegistry(profile_service, registry._secrets)
        imported = await fresh.import_all(blob, passphrase="correct horse")
        assert {p.name for p in imported} == {f"{DEFAULT_PROFILE_NAME} (Imported)", "Work (Imported)"}

    async def test_wrong_passphrase(self, registry):
        blob = await registry.export_all(passphrase="right")
        with pytest.raises(InvalidImportDataError):
            await registry.import_all(blob, passphrase="wrong")

    async def test_import_into_empty_registry_gets_a_default(self, profile_service, secret_store):
        registry = ProfileRegistry(profile_service, secret_store)
        blob = json.dumps([
            {"name": n, "apiEndpoint": "http://x", "apiKey": "", "modelName": "m",
             "parameters": {}, "isDefault": False}
            for n in ("One", "Two")
        ])
        imported = await registry.import_all(blob)

        assert imported[0].is_default
        assert registry.selected.id == imported[0].id
        _assert_single_default(registry)


class TestResetAndEvents:
    async def test_reset_restores_factory_default(self, registry, secret_store):
        default = registry.selected
        await registry.update(default.id, name="Tweaked", api_key="sk-tweak", model_name="gpt-4o")
        other = await _add(registry, "Other", key="sk-other")

        snapshot = await registry.reset()

        assert [p.id for p in snapshot.profiles] == [default.id]
        restored = snapshot.profiles[0]
        assert restored.name == DEFAULT_PROFILE_NAME
        assert restored.model_name == DEFAULT_MODEL_NAME
        assert await registry.get_secret(default.id) == ""
        assert secret_store.get(f"api_key_{other.id}") is None

    async def test_subscribers_receive_snapshots(self, registry):
        queue = registry.subscribe()
        profile = await _add(registry, "Work")
        await registry.select(profile.id)

        created = queue.get_nowait()
        assert created.kind is RegistryEventKind.CREATED
        assert created.snapshot.get(profile.id) is not None
        selected = queue.get_nowait()
        assert selected.kind is RegistryEventKind.SELECTED
        assert selected.snapshot.selected_id == profile.id

        registry.unsubscribe(queue)
        await registry.set_default(profile.id)
        assert queue.empty()

    async def test_failed_operation_publishes_nothing(self, registry):
        queue = registry.subscribe()
        before = registry.snapshot
        with pytest.raises(CannotDeleteLastProfileError):
            await registry.delete(before.selected_id)
        assert queue.empty()
        assert registry.snapshot is before


class TestConnection:
    async def test_reachable_openai_endpoint(self, registry):
        before = registry.snapshot
        assert await registry.test_connection(f"{OPENAI_BASE}/v1", "sk-test", "gpt-4o-mini")
        assert registry.snapshot is before

    async def test_bad_key_still_counts_as_reachable(self, registry):
        assert await registry.test_connection(f"{OPENAI_BASE}/v1", "sk-invalid", "gpt-4o-mini")

    async def test_server_error_is_unreachable(self, registry):
        assert not await registry.test_connection(f"{OPENAI_BASE}/v1", "sk-test", "server-error")

    async def test_ollama_routing(self, registry):
        assert await registry.test_connection(OLLAMA_BASE, "", "ollama:llama2")

    async def test_unknown_host(self, registry):
        assert not await registry.test_connection("http://nowhere.invalid/v1", "", "gpt-4o")
