import asyncio

import pytest

from storyboard.src.entities.registry import EntityRegistry, normalize_name, parse_tag
from storyboard.src.errors import InputValidationError, MalformedResponseError
from storyboard.tests.factories import DummyTextClient, data_url, entity, png_bytes

KITCHEN_SCRIPT = 'INT. KITCHEN - DAY\nAVA: "I left my gun in the car." Ava pours coffee.'


def identify(registry, payloads):
    client = DummyTextClient({"EntityIdentification": payloads})
    new_registry, new_entities = asyncio.run(registry.identify(KITCHEN_SCRIPT, client))
    return new_registry, new_entities, client


def test_tag_parsing_and_name_normalization():
    assert parse_tag("image 3") == "image 3"
    assert parse_tag("[Image 12]") == "image 12"
    assert parse_tag("image3") == "image 3"
    assert parse_tag("Ava") is None
    assert parse_tag(None) is None
    assert normalize_name("  Dr. Ava-Rose ") == "dravarose"


def test_identify_kitchen_scene_without_cast():
    registry, new_entities, client = identify(
        EntityRegistry(),
        [{"entities": [{"name": "Ava", "type": "character"}, {"name": "Kitchen", "type": "location"}]}],
    )

    assert [(e.name, e.type) for e in new_entities] == [("Ava", "character"), ("Kitchen", "location")]
    assert [e.ref_tag for e in new_entities] == ["image 1", "image 2"]
    assert registry.local_entities == new_entities
    prompt = client.calls[0]["prompt"]
    assert "NOT physically present" in prompt
    assert "[(none)]" in prompt
    assert KITCHEN_SCRIPT in prompt


def test_identify_links_global_character_instead_of_duplicating():
    ava = entity("Ava", "image 1", color="red", description="Lead, red coat")
    registry = EntityRegistry(global_entities=[ava])

    registry, new_entities, client = identify(
        registry,
        [{"entities": [{"name": "AVA", "type": "character"}, {"name": "Kitchen", "type": "location"}]}],
    )

    linked, kitchen = new_entities
    assert linked.linked_global_id == ava.id
    assert linked.id != ava.id
    assert (linked.name, linked.ref_tag, linked.image_data, linked.description) == (
        ava.name,
        ava.ref_tag,
        ava.image_data,
        ava.description,
    )
    # local numbering continues after the global numbering
    assert kitchen.ref_tag == "image 2"
    assert len([e for e in registry.local_entities if normalize_name(e.name) == "ava"]) == 1
    assert "[Ava]" in client.calls[0]["prompt"]


def test_identify_skips_names_already_in_the_sequence():
    registry = EntityRegistry(local_entities=[entity("Kitchen", "image 1", type="location")])

    registry, new_entities, _ = identify(
        registry,
        [{"entities": [{"name": "kitchen", "type": "location"}, {"name": "Ava", "type": "character"}]}],
    )

    assert [e.name for e in new_entities] == ["Ava"]
    assert new_entities[0].ref_tag == "image 2"
    assert len(registry.local_entities) == 2


def test_identify_requires_a_script():
    with pytest.raises(InputValidationError):
        asyncio.run(EntityRegistry().identify("   ", DummyTextClient()))


def test_identify_surfaces_malformed_responses():
    client = DummyTextClient({"EntityIdentification": [MalformedResponseError("bad json", capability="text")]})
    with pytest.raises(MalformedResponseError):
        asyncio.run(EntityRegistry().identify(KITCHEN_SCRIPT, client))


def test_find_prefers_local_then_global_then_fuzzy_name():
    global_ava = entity("Ava", "image 1")
    local_mug = entity("Coffee Mug", "image 2", type="item")
    registry = EntityRegistry(global_entities=[global_ava], local_entities=[local_mug])

    assert registry.find("image 2") is local_mug
    assert registry.find("[image 1]") is global_ava
    assert registry.find("coffee-mug") is local_mug
    assert registry.find("Coffee Mug", scope="global") is None
    assert registry.find("image 9") is None


def test_resolve_returns_none_without_image():
    registry = EntityRegistry(
        local_entities=[entity("Ava", "image 1", color="red"), entity("Ben", "image 2")],
    )

    ava = asyncio.run(registry.resolve("Ava"))
    assert ava is not None and ava.data == png_bytes("red")
    assert asyncio.run(registry.resolve("Ben")) is None
    assert asyncio.run(registry.resolve("Nobody")) is None


def test_mutations_return_new_snapshots_and_never_reuse_tags():
    registry = EntityRegistry()
    registry2, ava = registry.add_global("Ava")
    registry3, ben = registry2.add_global("Ben", description="Neighbour")

    assert registry.global_entities == []
    assert (ava.ref_tag, ben.ref_tag) == ("image 1", "image 2")

    registry4 = registry3.remove(ben.id)
    registry5, cara = registry4.add_global("Cara")
    assert cara.ref_tag == "image 3"

    with pytest.raises(InputValidationError):
        registry5.add_global("ava")

    registry6 = registry5.attach_image(ava.id, data_url("red"), "image/png")
    assert registry6.get(ava.id).has_image
    assert not registry5.get(ava.id).has_image


def test_promote_to_global_rejects_duplicate_names():
    registry = EntityRegistry(
        global_entities=[entity("Ava", "image 1")],
        local_entities=[entity("Kitchen", "image 2", type="location"), entity("ava", "image 3")],
    )
    kitchen, local_ava = registry.local_entities

    registry, promoted = registry.promote_to_global(kitchen.id)
    assert promoted.ref_tag == "image 4"
    assert registry.find_global_by_name("Kitchen") is promoted

    with pytest.raises(InputValidationError):
        registry.promote_to_global(local_ava.id)


def test_global_tags_never_collide_with_local_tags():
    ava = entity("Ava", "image 1", color="red")
    registry, new_entities, _ = identify(
        EntityRegistry(global_entities=[ava]),
        [{"entities": [{"name": "Kitchen", "type": "location"}]}],
    )
    assert new_entities[0].ref_tag == "image 2"

    registry, ben = registry.add_global("Ben")
    registry, promoted = registry.promote_to_global(new_entities[0].id)

    assert ben.ref_tag == "image 3"
    assert promoted.ref_tag == "image 4"
    tags = [e.ref_tag for e in registry.pool]
    assert len(tags) == len(set(tags))
    assert registry.find("image 3") is ben
    assert registry.find("image 2").name == "Kitchen"
