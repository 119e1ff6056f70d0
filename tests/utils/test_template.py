import pytest

from nodeforge.errors import TemplateError
from nodeforge.models.nodes import TEMPLATE_PLACEHOLDERS
from nodeforge.utils.template import (
    load_template,
    missing_placeholders,
    placeholders,
    render,
)


def test_missing_placeholder_renders_empty():
    assert render("${A}-${B}", {"A": "x"}) == "x-"


def test_only_upper_snake_placeholders_are_replaced():
    out = render("$A ${lower} ${A_1} ${A}", {"A": "x", "A_1": "y", "lower": "z"})
    assert out == "$A ${lower} y x"


def test_values_are_inserted_verbatim():
    assert render("k=${K}", {"K": "a\\1 ${B}"}) == "k=a\\1 ${B}"


def test_placeholders_in_first_appearance_order():
    assert placeholders("${B} ${A} ${B} ${C}") == ["B", "A", "C"]


def test_missing_placeholders_lists_names_without_value():
    assert missing_placeholders("${A} ${B} ${C}", {"B": ""}) == ["A", "C"]


async def test_packaged_template_uses_only_known_placeholders():
    template = await load_template()
    names = placeholders(template)
    assert "K3S_TOKEN" in names
    assert "SERVER_API" in names
    assert set(names) <= set(TEMPLATE_PLACEHOLDERS)


async def test_load_template_from_path(tmp_path):
    f = tmp_path / "custom.yaml"
    f.write_text("role: ${ROLE}\n")
    assert await load_template(f) == "role: ${ROLE}\n"


async def test_missing_template_file_raises(tmp_path):
    with pytest.raises(TemplateError):
        await load_template(tmp_path / "nope.yaml")
