from types import SimpleNamespace

from pecsboard.lineage import (
    Lineage,
    Mutation,
    board_mutation_permitted,
    card_mutation_permitted,
    classify,
    is_system_template,
)


def card(card_id="c1", template_key=None, source_board_id=None):
    return SimpleNamespace(id=card_id, template_key=template_key, source_board_id=source_board_id)


def test_classify():
    assert classify(card()) is Lineage.ORDINARY
    assert classify(card(source_board_id="b2")) is Lineage.INHERITED
    assert classify(card(template_key="apple")) is Lineage.TEMPLATE_ORIGIN
    # template_key wins when both are present
    assert classify(card(template_key="apple", source_board_id="b2")) is Lineage.TEMPLATE_ORIGIN


def test_system_template_boards():
    assert is_system_template("starter-feelings")
    assert is_system_template(SimpleNamespace(id="starter-food"))
    assert not is_system_template("4f1c2a")
    assert not board_mutation_permitted("starter-food")
    assert board_mutation_permitted("4f1c2a")


def test_card_mutations_by_lineage():
    ordinary = card()
    inherited = card(source_board_id="b2")
    template = card(template_key="apple")
    prefixed = card(card_id="sbp-apple")

    assert all(card_mutation_permitted(ordinary, m) for m in Mutation)
    assert not card_mutation_permitted(inherited, Mutation.EDIT)
    assert card_mutation_permitted(inherited, Mutation.DELETE)
    assert card_mutation_permitted(inherited, Mutation.MOVE)
    assert not any(card_mutation_permitted(template, m) for m in Mutation)
    assert not any(card_mutation_permitted(prefixed, m) for m in Mutation)
