"""
Test Suite for line-item keys, seeding, export and cascade removal
"""

import unittest

from formengine.contracts import FormDefinition, LineItemGroupConfig, LineItemRowState, QuestionDefinition
from formengine.core.line_items import (
    ROW_ID_KEY,
    ROW_SOURCE_KEY,
    build_initial_line_items,
    build_line_context_id,
    build_subgroup_key,
    cascade_remove_rows,
    export_line_items,
    find_row,
    is_auto_row,
    is_empty_row,
    parent_row_values,
    parse_subgroup_key,
    resolve_group_config,
    resolve_target_group_key,
    row_field_path,
    row_from_json,
    row_to_json,
)
from formengine.utils.helpers import SequentialRowIds


def build_definition():
    ingredients = LineItemGroupConfig(
        id="ingredients",
        fields=(QuestionDefinition(id="ingredient", type="TEXT"),),
    )
    dishes = LineItemGroupConfig(
        id="dishes",
        fields=(QuestionDefinition(id="dish", type="TEXT"),),
        sub_groups=(ingredients,),
    )
    leftovers = LineItemGroupConfig(
        id="leftovers",
        fields=(QuestionDefinition(id="item", type="TEXT"),),
        min_rows=2,
    )
    return FormDefinition(questions=(
        QuestionDefinition(id="shift", type="CHOICE"),
        QuestionDefinition(id="dishes", type="LINE_ITEM_GROUP", line_item_config=dishes),
        QuestionDefinition(id="leftovers", type="LINE_ITEM_GROUP", line_item_config=leftovers),
    ))


class TestKeys(unittest.TestCase):

    def test_subgroup_key_round_trip(self):
        key = build_subgroup_key("dishes", "r1", "ingredients")
        self.assertEqual(key, "dishes::r1::ingredients")
        self.assertEqual(parse_subgroup_key(key), ("dishes", "r1", "ingredients"))

    def test_top_level_key_is_not_a_subgroup(self):
        self.assertIsNone(parse_subgroup_key("dishes"))
        self.assertIsNone(parse_subgroup_key("dishes::r1"))

    def test_context_id_and_field_path(self):
        self.assertEqual(build_line_context_id("dishes", "r1", "dish"), "dishes::r1::dish")
        self.assertEqual(row_field_path("dishes", "dish", "r1"), "dishes__dish__r1")

    def test_resolve_group_config(self):
        definition = build_definition()
        self.assertEqual(resolve_group_config(definition, "dishes").id, "dishes")
        self.assertEqual(resolve_group_config(definition, "dishes::r9::ingredients").id, "ingredients")
        self.assertIsNone(resolve_group_config(definition, "shift"))
        self.assertIsNone(resolve_group_config(definition, "dishes::r9::nope"))

    def test_resolve_target_group_key(self):
        definition = build_definition()
        self.assertEqual(resolve_target_group_key(definition, "leftovers", "dishes", "r1"), "leftovers")
        self.assertEqual(
            resolve_target_group_key(definition, "ingredients", "dishes", "r1"),
            "dishes::r1::ingredients",
        )
        self.assertEqual(
            resolve_target_group_key(definition, "ingredients", "dishes::r1::ingredients", "i1"),
            "dishes::r1::ingredients",
        )
        self.assertIsNone(resolve_target_group_key(definition, "ingredients"))


class TestRows(unittest.TestCase):

    def test_auto_row_detection(self):
        self.assertTrue(is_auto_row(LineItemRowState(id="a", auto_generated=True)))
        self.assertFalse(is_auto_row(LineItemRowState(id="a", values={ROW_SOURCE_KEY: "auto"}, auto_generated=False)))
        self.assertTrue(is_auto_row(LineItemRowState(id="a", values={ROW_SOURCE_KEY: "auto"})))
        self.assertFalse(is_auto_row(LineItemRowState(id="a")))

    def test_empty_row_ignores_reserved_keys(self):
        self.assertTrue(is_empty_row(LineItemRowState(id="a", values={ROW_ID_KEY: "a", "dish": " "})))
        self.assertFalse(is_empty_row(LineItemRowState(id="a", values={"portions": 0})))

    def test_find_row_and_parent_values(self):
        line_items = {
            "dishes": [LineItemRowState(id="r1", values={"dish": "Soup"})],
            "dishes::r1::ingredients": [LineItemRowState(id="i1", values={"ingredient": "Salt"})],
        }
        self.assertEqual(find_row(line_items, "dishes", "r1").values["dish"], "Soup")
        self.assertIsNone(find_row(line_items, "dishes", "r2"))
        self.assertEqual(parent_row_values(line_items, "dishes::r1::ingredients"), [{"dish": "Soup"}])
        self.assertEqual(parent_row_values(line_items, "dishes"), [])

    def test_json_round_trip(self):
        row = LineItemRowState(
            id="i1", values={"ingredient": "Salt"}, auto_generated=True,
            effect_context_id="ctx", parent_id="r1", parent_group_id="dishes",
        )
        data = row_to_json(row)
        self.assertEqual(data["effectContextId"], "ctx")
        self.assertEqual(row_from_json(data), row)


class TestCascadeRemove(unittest.TestCase):

    def test_removes_sub_group_instances(self):
        line_items = {
            "dishes": [LineItemRowState(id="r1"), LineItemRowState(id="r2")],
            "dishes::r1::ingredients": [LineItemRowState(id="i1"), LineItemRowState(id="i2")],
            "dishes::r2::ingredients": [LineItemRowState(id="i3")],
        }
        result, removed = cascade_remove_rows(line_items, "dishes", ["r1"])

        self.assertEqual([r.id for r in result["dishes"]], ["r2"])
        self.assertNotIn("dishes::r1::ingredients", result)
        self.assertIn("dishes::r2::ingredients", result)
        self.assertEqual(
            sorted(removed),
            [("dishes", "r1"), ("dishes::r1::ingredients", "i1"), ("dishes::r1::ingredients", "i2")],
        )
        # Input untouched
        self.assertIn("dishes::r1::ingredients", line_items)

    def test_no_ids_is_a_no_op(self):
        line_items = {"dishes": []}
        result, removed = cascade_remove_rows(line_items, "dishes", [])
        self.assertIs(result, line_items)
        self.assertEqual(removed, [])


class TestSeedAndExport(unittest.TestCase):

    def test_seed_from_record_keeps_ids_and_nests(self):
        definition = build_definition()
        record = {
            "shift": "Evening",
            "dishes": [
                {ROW_ID_KEY: "r1", "dish": "Soup", "ingredients": [{"ingredient": "Salt"}]},
                {"id": "r2", "dish": "Curry"},
            ],
            "leftovers": [{"item": "Rice"}],
        }
        line_items = build_initial_line_items(definition, record, SequentialRowIds())

        self.assertEqual([r.id for r in line_items["dishes"]], ["r1", "r2"])
        self.assertNotIn("ingredients", line_items["dishes"][0].values)
        sub = line_items["dishes::r1::ingredients"]
        self.assertEqual(sub[0].id, "ingredients_1")
        self.assertEqual(sub[0].parent_id, "r1")
        self.assertEqual(line_items["dishes::r2::ingredients"], [])
        self.assertEqual(len(line_items["leftovers"]), 1)

    def test_seed_min_rows_for_empty_manual_group(self):
        line_items = build_initial_line_items(build_definition(), {}, SequentialRowIds())
        self.assertEqual([r.id for r in line_items["leftovers"]], ["leftovers_1", "leftovers_2"])
        self.assertEqual(line_items["dishes"], [])

    def test_export_nests_sub_groups(self):
        definition = build_definition()
        line_items = {
            "dishes": [LineItemRowState(id="r1", values={"dish": "Soup"})],
            "dishes::r1::ingredients": [LineItemRowState(id="i1", values={"ingredient": "Salt"})],
            "leftovers": [],
        }
        record = export_line_items(definition, line_items)
        self.assertEqual(record["dishes"], [{
            "dish": "Soup",
            ROW_ID_KEY: "r1",
            "ingredients": [{"ingredient": "Salt", ROW_ID_KEY: "i1"}],
        }])
        self.assertEqual(record["leftovers"], [])

    def test_export_then_seed_restores_rows(self):
        definition = build_definition()
        line_items = {
            "dishes": [LineItemRowState(id="r1", values={"dish": "Soup"})],
            "dishes::r1::ingredients": [LineItemRowState(id="i1", values={"ingredient": "Salt"})],
            "leftovers": [LineItemRowState(id="l1", values={"item": "Rice"})],
        }
        restored = build_initial_line_items(definition, export_line_items(definition, line_items), SequentialRowIds())
        self.assertEqual(restored["dishes::r1::ingredients"][0].id, "i1")
        self.assertEqual(restored["leftovers"][0].values["item"], "Rice")


if __name__ == '__main__':
    unittest.main()
