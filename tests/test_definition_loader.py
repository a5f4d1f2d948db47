"""
Test Suite for the definition loader

Covers:
- Loading the bundled meal production form
- Error aggregation for broken definitions
- Accepted option set shapes
"""

import json
import unittest
from pathlib import Path

from formengine.contracts import ADD_MODE_AUTO, FIELD_LINE_ITEM_GROUP
from formengine.core.definition_loader import (
    load_definition,
    parse_definition,
    parse_option_set,
    validate_definition,
)

DEFINITION_PATH = Path(__file__).resolve().parent.parent / "data" / "meal_production_form.json"


def minimal(questions):
    return {"questions": questions}


# =============================================================================
# PART 1: Bundled definition
# =============================================================================

class TestBundledDefinition(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.definition = load_definition(str(DEFINITION_PATH))

    def test_languages(self):
        self.assertEqual(self.definition.languages, ("en", "fr"))
        self.assertEqual(self.definition.default_language, "en")

    def test_auto_group_config(self):
        dishes = self.definition.question("dishes")
        self.assertEqual(dishes.type, FIELD_LINE_ITEM_GROUP)
        config = dishes.line_item_config
        self.assertEqual(config.add_mode, ADD_MODE_AUTO)
        self.assertEqual(config.anchor_field.id, "dish")
        self.assertEqual(config.anchor_field.option_filter.depends_on, ("mealType", "shift"))
        self.assertTrue(config.anchor_field.option_filter.exclusive)

    def test_sub_group_and_selector(self):
        ingredients = self.definition.question("dishes").line_item_config.sub_group("ingredients")
        self.assertIsNotNone(ingredients)
        self.assertEqual(ingredients.section_selector.id, "storage")
        self.assertEqual(ingredients.section_selector.options.values, ("Fridge", "Freezer", "Dry store"))
        self.assertEqual(ingredients.dedup_rules[0].fields, ("ingredient",))

    def test_effect_ids(self):
        meal = self.definition.question("mealType")
        self.assertEqual(meal.selection_effects[0].id, "dinnerHotHoldingCheck")
        self.assertEqual(meal.selection_effects[0].trigger_values, ("Dinner",))

    def test_option_labels_by_language(self):
        shift = self.definition.question("shift")
        self.assertEqual(shift.options.values, ("Morning", "Evening"))
        self.assertEqual(shift.options.labels["fr"], ("Matin", "Soir"))

    def test_value_map(self):
        use_by = self.definition.question("useByDate")
        self.assertEqual(use_by.value_map.op, "addDays")
        self.assertEqual(use_by.value_map.offset_days, 3)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_definition(str(DEFINITION_PATH.parent / "does_not_exist.json"))


# =============================================================================
# PART 2: Structural validation
# =============================================================================

class TestStructuralValidation(unittest.TestCase):

    def test_not_an_object(self):
        self.assertEqual(validate_definition([]), ["Form definition must be a JSON object"])

    def test_missing_questions(self):
        self.assertEqual(validate_definition({}), ["Missing 'questions' in form definition"])

    def test_every_problem_is_reported(self):
        data = minimal([
            {"id": "a", "type": "TEXT"},
            {"id": "a", "type": "SLIDER"},
            {"type": "TEXT"},
        ])
        errors = validate_definition(data)
        self.assertIn("Duplicate question id 'a'", errors)
        self.assertIn("Question 'a' has unknown type 'SLIDER'", errors)
        self.assertIn("Question at index 2 missing 'id'", errors)

        with self.assertRaises(ValueError) as ctx:
            parse_definition(data)
        self.assertIn("Form definition validation failed", str(ctx.exception))
        self.assertIn("Duplicate question id 'a'", str(ctx.exception))

    def test_auto_anchor_needs_depends_on(self):
        data = minimal([{
            "id": "g", "type": "LINE_ITEM_GROUP",
            "lineItemConfig": {
                "addMode": "auto", "anchorFieldId": "x",
                "fields": [{"id": "x", "type": "CHOICE", "options": ["a"]}],
            },
        }])
        self.assertEqual(
            validate_definition(data),
            ["Auto-add anchor 'g.x' must declare optionFilter.dependsOn"],
        )

    def test_anchor_must_be_a_group_field(self):
        data = minimal([{
            "id": "g", "type": "LINE_ITEM_GROUP",
            "lineItemConfig": {"addMode": "overlay", "anchorFieldId": "y", "fields": [{"id": "x", "type": "TEXT"}]},
        }])
        self.assertEqual(validate_definition(data), ["Group 'g' anchorFieldId 'y' is not one of its fields"])

    def test_sub_groups_nest_one_level(self):
        data = minimal([{
            "id": "g", "type": "LINE_ITEM_GROUP",
            "lineItemConfig": {
                "fields": [{"id": "x", "type": "TEXT"}],
                "subGroups": [{
                    "id": "s", "fields": [{"id": "y", "type": "TEXT"}],
                    "subGroups": [{"id": "deep", "fields": [{"id": "z", "type": "TEXT"}]}],
                }],
            },
        }])
        self.assertEqual(validate_definition(data), ["Sub-group 'deep' nests deeper than one level"])

    def test_effect_must_target_known_group(self):
        data = minimal([
            {"id": "a", "type": "CHOICE", "selectionEffects": [{"type": "addLineItems", "groupId": "nope"}]},
        ])
        self.assertEqual(
            validate_definition(data),
            ["Selection effect 0 on 'a' targets unknown group 'nope'"],
        )

    def test_rule_and_value_map_checks(self):
        data = minimal([
            {"id": "a", "type": "TEXT", "validationRules": [{"when": {}, "then": {}}]},
            {"id": "b", "type": "TEXT", "valueMap": {"dependsOn": ["a"], "op": "multiply"}},
            {"id": "c", "type": "TEXT", "validationRules": [
                {"when": {}, "then": {"fieldId": "c"}, "phase": "later"},
            ]},
        ])
        self.assertEqual(validate_definition(data), [
            "Validation rule 0 on 'a' missing 'then.fieldId'",
            "Value map on 'b' has unknown op 'multiply'",
            "Validation rule 0 on 'c' has unknown phase 'later'",
        ])

    def test_default_effect_id(self):
        definition = parse_definition(minimal([
            {"id": "a", "type": "CHOICE", "selectionEffects": [
                {"type": "clearLineItems", "groupId": "g"},
                {"type": "deleteLineItems", "groupId": "g", "targetEffectId": "a#0"},
            ]},
            {"id": "g", "type": "LINE_ITEM_GROUP", "lineItemConfig": {"fields": [{"id": "x", "type": "TEXT"}]}},
        ]))
        effects = definition.question("a").selection_effects
        self.assertEqual([e.id for e in effects], ["a#0", "a#1"])
        self.assertIsNone(effects[0].target_effect_id)
        self.assertEqual(effects[1].target_effect_id, "a#0")

    def test_bundled_file_is_valid_json_definition(self):
        with open(DEFINITION_PATH, encoding="utf-8") as f:
            self.assertEqual(validate_definition(json.load(f)), [])


# =============================================================================
# PART 3: Option set shapes
# =============================================================================

class TestParseOptionSet(unittest.TestCase):

    def test_plain_list(self):
        options = parse_option_set(["a", "b", ""])
        self.assertEqual(options.values, ("a", "b"))
        self.assertEqual(options.labels, {})

    def test_list_of_dicts(self):
        options = parse_option_set([
            {"value": "s", "label": {"en": "Salmon", "fr": "Saumon"}, "tooltip": "Bones"},
            {"value": "c", "label": "Curry"},
        ])
        self.assertEqual(options.values, ("s", "c"))
        self.assertEqual(options.labels["en"], ("Salmon", "Curry"))
        self.assertEqual(options.labels["fr"], ("Saumon", ""))
        self.assertEqual(options.tooltips, {"s": "Bones"})

    def test_language_lists(self):
        options = parse_option_set({"en": ["Yes", "No"], "FR": ["Oui", "Non"]})
        self.assertEqual(options.values, ("Yes", "No"))
        self.assertEqual(options.labels["fr"], ("Oui", "Non"))

    def test_values_and_labels(self):
        options = parse_option_set({"values": ["y", "n"], "labels": {"en": ["Yes", "No"]}})
        self.assertEqual(options.values, ("y", "n"))
        self.assertEqual(options.labels["en"], ("Yes", "No"))

    def test_none_and_unknown_shapes(self):
        self.assertIsNone(parse_option_set(None))
        self.assertIsNone(parse_option_set("a,b"))


if __name__ == '__main__':
    unittest.main()
