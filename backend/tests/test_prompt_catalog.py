"""
PromptCatalog Tests

- Versioning and single-active-per-session-type
- Encryption at rest (ciphertext + hash only)
- Typed model config
- Admin updates and the metadata-only describe() view
"""

import pytest
from sqlalchemy.exc import IntegrityError

from exceptions import PromptNotFound
from models import AIPrompt
from services.prompt_catalog import PromptCatalog, PromptModelConfig
from services.secret_store import SecretStore


def _active_rows(db, session_type):
    return db.query(AIPrompt).filter(
        AIPrompt.session_type == session_type,
        AIPrompt.is_active == True
    ).all()


def test_create_assigns_version_one_and_activates(catalog):
    prompt = catalog.create("reference_coach", "You are a coach.")

    assert prompt.version == 1
    assert prompt.is_active is True
    assert catalog.get_active("reference_coach").id == prompt.id


def test_version_two_deactivates_version_one(catalog, db):
    v1 = catalog.create("reference_coach", "Prompt v1")
    v2 = catalog.create("reference_coach", "Prompt v2")

    db.refresh(v1)
    assert v2.version == 2
    assert v1.is_active is False
    assert catalog.get_active("reference_coach").id == v2.id
    assert len(_active_rows(db, "reference_coach")) == 1


def test_versions_are_per_session_type(catalog, db):
    catalog.create("reference_coach", "a")
    catalog.create("reference_coach", "b")
    verification = catalog.create("verification", "c")

    assert verification.version == 1
    assert len(_active_rows(db, "reference_coach")) == 1
    assert len(_active_rows(db, "verification")) == 1


def test_prompt_is_stored_encrypted(catalog, secret_store):
    prompt = catalog.create("reference_coach", "Plaintext that must not be stored")

    assert "Plaintext" not in prompt.system_prompt_encrypted
    assert prompt.prompt_hash == SecretStore.fingerprint("Plaintext that must not be stored")
    assert catalog.decrypt_for(prompt.id) == "Plaintext that must not be stored"


def test_get_active_without_prompt_raises(catalog):
    with pytest.raises(PromptNotFound):
        catalog.get_active("unknown_type")


def test_get_unknown_id_raises(catalog):
    with pytest.raises(PromptNotFound):
        catalog.decrypt_for("does-not-exist")


@pytest.mark.parametrize("session_type,text", [("", "prompt"), ("reference_coach", "   ")])
def test_create_rejects_empty_input(catalog, session_type, text):
    with pytest.raises(ValueError):
        catalog.create(session_type, text)


def test_partial_unique_index_blocks_second_active_row(catalog, db, secret_store):
    catalog.create("reference_coach", "v1")

    db.add(AIPrompt(
        session_type="reference_coach",
        version=2,
        system_prompt_encrypted=secret_store.encrypt("rogue"),
        prompt_hash=SecretStore.fingerprint("rogue"),
        model_preference="claude-3-5-sonnet-20241022",
        is_active=True,
    ))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


# --- Model config ---

def test_model_config_is_typed(catalog):
    prompt = catalog.create(
        "reference_coach", "p",
        model_config={"temperature": 0.3, "max_tokens": 2048, "stop_sequences": ["END"]},
    )
    config = catalog.model_config_for(prompt)

    assert config.temperature == 0.3
    assert config.max_tokens == 2048
    assert config.stop_sequences == ["END"]


@pytest.mark.parametrize("raw", [
    {"temperature": 1.5},
    {"max_tokens": 0},
    {"max_tokens": 200001},
    {"top_k": 5},
])
def test_model_config_rejects_invalid_options(raw):
    with pytest.raises(ValueError) as exc_info:
        PromptModelConfig.parse(raw)
    assert "Invalid model_config" in str(exc_info.value)


def test_create_with_invalid_config_stores_nothing(catalog, db):
    with pytest.raises(ValueError):
        catalog.create("reference_coach", "p", model_config={"temperature": 3})
    assert db.query(AIPrompt).count() == 0


# --- Update / list / describe ---

def test_update_reactivating_old_version_deactivates_current(catalog, db):
    v1 = catalog.create("reference_coach", "v1")
    v2 = catalog.create("reference_coach", "v2")

    catalog.update(v1.id, {"is_active": True})

    db.refresh(v2)
    assert v2.is_active is False
    assert catalog.get_active("reference_coach").id == v1.id
    assert len(_active_rows(db, "reference_coach")) == 1


def test_update_reencrypts_system_prompt(catalog):
    prompt = catalog.create("reference_coach", "old text")
    old_hash = prompt.prompt_hash

    catalog.update(prompt.id, {"system_prompt": "new text", "notes": "reworded"})

    assert catalog.decrypt_for(prompt.id) == "new text"
    assert prompt.prompt_hash != old_hash
    assert prompt.notes == "reworded"


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_update_rejects_blank_system_prompt(catalog, text):
    prompt = catalog.create("reference_coach", "old text")
    old_hash = prompt.prompt_hash

    with pytest.raises(ValueError):
        catalog.update(prompt.id, {"system_prompt": text})

    assert catalog.decrypt_for(prompt.id) == "old text"
    assert catalog.get(prompt.id).prompt_hash == old_hash


def test_list_prompts_orders_by_type_then_newest_version(catalog):
    catalog.create("verification", "a")
    catalog.create("reference_coach", "b")
    catalog.create("reference_coach", "c")

    listed = [(p.session_type, p.version) for p in catalog.list_prompts()]
    assert listed == [("reference_coach", 2), ("reference_coach", 1), ("verification", 1)]
    assert len(catalog.list_prompts("verification")) == 1


def test_describe_has_no_prompt_material(catalog):
    prompt = catalog.create("reference_coach", "Secret coaching rubric")
    view = PromptCatalog.describe(prompt)

    assert "system_prompt_encrypted" not in view
    assert "system_prompt" not in view
    assert prompt.system_prompt_encrypted not in str(view)
    assert "Secret coaching rubric" not in str(view)
    assert view["version"] == 1
