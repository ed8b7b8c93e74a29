from crowdquest.config import DEFAULT_CONFIG, load_config
from crowdquest.models import PageRequestSpec
from crowdquest.prompt_manager import PromptManager

MOTIFS = {
    "space": {"indicators": ["mars", "martian", "space"], "elements": ["small rovers", "astronauts"]},
    "city": {"indicators": ["outpost", "city"], "elements": ["street vendors"]},
    "jungle": {"indicators": ["jungle"], "elements": ["parrots"]},
}


def make_manager(**overrides):
    config = dict(DEFAULT_CONFIG["generation"], motifs=MOTIFS)
    config.update(overrides)
    return PromptManager(config)


def test_detect_motifs_orders_by_strength():
    manager = make_manager()

    assert manager.detect_motifs("Martian Outpost on Mars") == ["space", "city"]
    assert manager.detect_motifs("JUNGLE temple") == ["jungle"]
    assert manager.detect_motifs("Underwater palace") == []


def test_variation_text(photo):
    manager = make_manager()
    spec = PageRequestSpec(target_photo=photo, theme="Jungle", variation_index=1, total_pages=3)

    assert manager.build_variation_text(spec) == (
        "Jungle - unique variation #2 with different character placements and sub-themes."
    )


def test_page_prompt_includes_motifs_and_item_count(photo):
    manager = make_manager(quest_item_count=4)
    spec = PageRequestSpec(target_photo=photo, theme="Martian Outpost", variation_index=0, total_pages=3)

    prompt = manager.build_page_prompt(spec)

    assert "Martian Outpost - unique variation #1" in prompt
    assert "page 1 of 3" in prompt
    assert "small rovers, astronauts" in prompt
    assert "hide 4 small, distinct objects" in prompt


def test_page_prompt_without_motifs_has_no_motif_section(photo):
    manager = make_manager()
    spec = PageRequestSpec(target_photo=photo, theme="Underwater palace", variation_index=0, total_pages=1)

    assert "THEME MOTIFS" not in manager.build_page_prompt(spec)


def test_locate_prompt_asks_for_normalized_box():
    prompt = make_manager().build_locate_prompt()
    assert "box_2d" in prompt and "0-1000" in prompt


def test_load_config_merges_partial_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("generation:\n  max_pages: 8\nlibrary:\n  path: books.json\n")

    config = load_config(str(path))

    assert config["generation"]["max_pages"] == 8
    assert config["generation"]["min_pages"] == 1
    assert config["library"]["path"] == "books.json"
    assert config["library"]["key"] == "crowd_quest_library"
    assert config["image"]["max_dimension"] == 1200


def test_load_config_missing_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config == DEFAULT_CONFIG
    assert config is not DEFAULT_CONFIG
