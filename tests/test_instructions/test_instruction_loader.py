import pytest

from deckhand.instructions import InstructionLoader


def test_render_fills_known_and_keeps_unknown_placeholders(tmp_path):
    base = tmp_path / "base"
    base.mkdir()
    (base / "t.md").write_text("Hello {name}, {unknown}\n", encoding="utf-8")
    loader = InstructionLoader(base_dir=base, personal_dir=tmp_path / "personal")

    assert loader.render("t.md", name="crew") == "Hello crew, {unknown}"


def test_personal_override_wins(tmp_path):
    base = tmp_path / "base"
    personal = tmp_path / "personal"
    base.mkdir()
    personal.mkdir()
    (base / "t.md").write_text("base", encoding="utf-8")
    (personal / "t.md").write_text("personal", encoding="utf-8")

    assert InstructionLoader(base_dir=base, personal_dir=personal).load("t.md") == "personal"


def test_missing_template_raises(tmp_path):
    loader = InstructionLoader(base_dir=tmp_path, personal_dir=tmp_path / "none")

    with pytest.raises(FileNotFoundError):
        loader.load("missing.md")


def test_packaged_templates_exist(tmp_path):
    loader = InstructionLoader(personal_dir=tmp_path)

    assert "{available_tools}" in loader.load("system_tools_prompt.md")
    assert "<TaskCompletion>" in loader.render("output_format.md", completion_sentinel="TaskCompletion")
