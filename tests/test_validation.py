"""
Test Suite for validation rules and whole-form validation

Covers:
- check_rule constraint order and messages
- Phase gating (change / submit / both)
- Hidden fields and hidden groups
- Required fields inside rows, required groups
- Row bounds and duplicate rows
"""

import unittest

from formengine.contracts import (
    DedupRule,
    FormDefinition,
    LineItemGroupConfig,
    LineItemRowState,
    QuestionDefinition,
    RuleThen,
    ValidationRule,
)
from formengine.core.conditions import FormContext
from formengine.core.validation import (
    ValidationContext,
    check_rule,
    rule_applies_to_phase,
    validate_form,
    validate_rules,
)


def row(row_id, **values):
    return LineItemRowState(id=row_id, values=values, auto_generated=False)


# =============================================================================
# PART 1: check_rule
# =============================================================================

class TestCheckRule(unittest.TestCase):

    def test_required(self):
        then = RuleThen(field_id="a", required=True)
        self.assertEqual(check_rule("", then), "This field is required.")
        self.assertIsNone(check_rule("x", then))

    def test_empty_value_only_fails_required(self):
        self.assertIsNone(check_rule(None, RuleThen(field_id="a", min=5)))

    def test_min_max(self):
        then = RuleThen(field_id="a", min=1, max=500)
        self.assertEqual(check_rule("0", then), "Must be at least 1.")
        self.assertEqual(check_rule(501, then), "Must be at most 500.")
        self.assertIsNone(check_rule(20, then))

    def test_min_from_other_field(self):
        then = RuleThen(field_id="end", min_field_id="start")
        values = {"start": 10}
        self.assertEqual(check_rule(5, then, get_value=values.get), "Must be at least 10.")
        self.assertIsNone(check_rule(12, then, get_value=values.get))

    def test_allowed_and_disallowed(self):
        self.assertEqual(
            check_rule("c", RuleThen(field_id="a", allowed=("a", "b"))),
            "Must be one of: a, b.",
        )
        self.assertEqual(
            check_rule(["a", "x"], RuleThen(field_id="a", disallowed=("x",))),
            "Not allowed: x.",
        )

    def test_rule_without_constraints_always_fails(self):
        self.assertEqual(check_rule("x", RuleThen(field_id="a")), "This combination is not allowed.")

    def test_custom_localized_message(self):
        message = {"en": "Too cold", "fr": "Trop froid"}
        then = RuleThen(field_id="t", min=63)
        self.assertEqual(check_rule(50, then, "fr", message), "Trop froid")

    def test_default_message_in_french(self):
        self.assertEqual(check_rule("", RuleThen(field_id="a", required=True), "fr"), "Ce champ est obligatoire.")


# =============================================================================
# PART 2: Rule phases and hidden targets
# =============================================================================

class TestValidateRules(unittest.TestCase):

    def setUp(self):
        self.rules = [
            ValidationRule(
                when={"fieldId": "mealType", "equals": "Dinner"},
                then=RuleThen(field_id="temp", required=True),
                message="Temperature needed",
                phase="submit",
            ),
            ValidationRule(
                when={},
                then=RuleThen(field_id="portions", min=1),
                phase="change",
            ),
        ]

    def test_phase_gating(self):
        submit_only = ValidationRule(when={}, then=RuleThen(field_id="a"), phase="submit")
        change_only = ValidationRule(when={}, then=RuleThen(field_id="a"), phase="change")
        both = ValidationRule(when={}, then=RuleThen(field_id="a"), phase="both")

        self.assertFalse(rule_applies_to_phase(submit_only, "change"))
        self.assertTrue(rule_applies_to_phase(change_only, "change"))
        self.assertTrue(rule_applies_to_phase(both, "change"))
        # Submit is the final gate and runs everything
        self.assertTrue(rule_applies_to_phase(change_only, "submit"))
        self.assertTrue(rule_applies_to_phase(submit_only, "submit"))

    def test_change_phase_skips_submit_rules(self):
        ctx = ValidationContext(FormContext({"mealType": "Dinner", "portions": 0}), phase="change")
        errors = validate_rules(self.rules, ctx)
        self.assertEqual([e.field_id for e in errors], ["portions"])

    def test_submit_phase_reports_every_violation(self):
        ctx = ValidationContext(FormContext({"mealType": "Dinner", "portions": 0}), phase="submit")
        errors = validate_rules(self.rules, ctx)
        self.assertEqual([e.field_id for e in errors], ["temp", "portions"])
        self.assertEqual(errors[0].message, "Temperature needed")

    def test_when_not_holding_skips_rule(self):
        ctx = ValidationContext(FormContext({"mealType": "Lunch", "portions": 3}))
        self.assertEqual(validate_rules(self.rules, ctx), [])

    def test_hidden_target_is_skipped(self):
        ctx = ValidationContext(
            FormContext({"mealType": "Dinner", "portions": 3}),
            is_hidden=lambda field_id: field_id == "temp",
        )
        self.assertEqual(validate_rules(self.rules, ctx), [])


# =============================================================================
# PART 3: Whole-form validation
# =============================================================================

class TestValidateForm(unittest.TestCase):

    def setUp(self):
        ingredients = LineItemGroupConfig(
            id="ingredients",
            fields=(
                QuestionDefinition(id="ingredient", type="TEXT", required=True),
                QuestionDefinition(
                    id="batchCode", type="TEXT", required=True,
                    visibility={"hideWhen": {"fieldId": "storage", "equals": "Dry store"}},
                ),
            ),
            dedup_rules=(DedupRule(fields=("ingredient",)),),
        )
        dishes = LineItemGroupConfig(
            id="dishes",
            fields=(
                QuestionDefinition(id="dish", type="CHOICE", required=True),
                QuestionDefinition(id="portions", type="NUMBER", required=True),
            ),
            sub_groups=(ingredients,),
            min_rows=1,
            max_rows=2,
        )
        self.definition = FormDefinition(questions=(
            QuestionDefinition(id="shift", type="CHOICE", required=True),
            QuestionDefinition(
                id="notes", type="PARAGRAPH", required=True,
                visibility={"showWhen": {"fieldId": "shift", "equals": "Evening"}},
            ),
            QuestionDefinition(
                id="dishes", type="LINE_ITEM_GROUP", required=True,
                line_item_config=dishes,
            ),
            QuestionDefinition(
                id="leftovers", type="LINE_ITEM_GROUP",
                visibility={"hideWhen": {"fieldId": "shift", "equals": "Morning"}},
                line_item_config=LineItemGroupConfig(
                    id="leftovers",
                    fields=(QuestionDefinition(id="item", type="TEXT", required=True),),
                ),
            ),
        ))

    def paths(self, errors):
        return [e.path for e in errors]

    def test_required_top_level_and_required_group(self):
        errors = validate_form(self.definition, {}, {"dishes": []})
        self.assertEqual(self.paths(errors), ["shift", "dishes", "dishes"])
        self.assertEqual([e.kind for e in errors], ["required", "required", "min_rows"])

    def test_hidden_required_field_is_not_validated(self):
        errors = validate_form(self.definition, {"shift": "Morning"}, {"dishes": [row("d1", dish="Soup", portions=4)]})
        self.assertEqual(errors, [])

    def test_visible_required_field_is_validated(self):
        errors = validate_form(self.definition, {"shift": "Evening"}, {"dishes": [row("d1", dish="Soup", portions=4)]})
        self.assertEqual(self.paths(errors), ["notes"])

    def test_required_row_field_uses_row_path(self):
        errors = validate_form(
            self.definition, {"shift": "Morning"}, {"dishes": [row("d1", dish="Soup", portions="")]},
        )
        self.assertEqual(self.paths(errors), ["dishes__portions__d1"])
        self.assertEqual(errors[0].row_id, "d1")
        self.assertEqual(errors[0].group_key, "dishes")

    def test_zero_portions_is_a_value(self):
        errors = validate_form(self.definition, {"shift": "Morning"}, {"dishes": [row("d1", dish="Soup", portions=0)]})
        self.assertEqual(errors, [])

    def test_hidden_group_skips_all_rows(self):
        line_items = {
            "dishes": [row("d1", dish="Soup", portions=1)],
            "leftovers": [row("l1", item="")],
        }
        self.assertEqual(validate_form(self.definition, {"shift": "Morning"}, line_items), [])
        errors = validate_form(self.definition, {"shift": "Evening", "notes": "ok"}, line_items)
        self.assertEqual(self.paths(errors), ["leftovers__item__l1"])

    def test_max_rows(self):
        line_items = {"dishes": [row(f"d{i}", dish="Soup", portions=1) for i in range(3)]}
        errors = validate_form(self.definition, {"shift": "Morning"}, line_items)
        self.assertEqual([e.kind for e in errors], ["max_rows"])
        self.assertEqual(errors[0].message, "At most 2 row(s) allowed.")

    def test_sub_group_rows_are_validated_with_parent_scope(self):
        sub_key = "dishes::d1::ingredients"
        line_items = {
            "dishes": [row("d1", dish="Soup", portions=1, storage="Dry store")],
            sub_key: [row("i1", ingredient="Lentils", batchCode="")],
        }
        # batchCode is hidden through the parent row's storage value
        self.assertEqual(validate_form(self.definition, {"shift": "Morning"}, line_items), [])

        line_items["dishes"] = [row("d1", dish="Soup", portions=1, storage="Fridge")]
        errors = validate_form(self.definition, {"shift": "Morning"}, line_items)
        self.assertEqual(self.paths(errors), [f"{sub_key}__batchCode__i1"])

    def test_every_duplicate_row_is_flagged(self):
        sub_key = "dishes::d1::ingredients"
        line_items = {
            "dishes": [row("d1", dish="Soup", portions=1, storage="Dry store")],
            sub_key: [
                row("i1", ingredient="Salt"),
                row("i2", ingredient="salt "),
                row("i3", ingredient="Pepper"),
            ],
        }
        errors = validate_form(self.definition, {"shift": "Morning"}, line_items)
        self.assertEqual([e.kind for e in errors], ["duplicate", "duplicate"])
        self.assertEqual([e.row_id for e in errors], ["i1", "i2"])

    def test_row_rule_skips_hidden_top_level_target(self):
        over_limit = ValidationRule(
            when={"fieldId": "portions", "greaterThan": 5},
            then=RuleThen(field_id="notes", required=True),
        )
        dishes = LineItemGroupConfig(
            id="dishes",
            fields=(QuestionDefinition(id="portions", type="NUMBER", validation_rules=(over_limit,)),),
        )
        definition = FormDefinition(questions=(
            QuestionDefinition(id="shift", type="CHOICE"),
            QuestionDefinition(
                id="notes", type="PARAGRAPH",
                visibility={"showWhen": {"fieldId": "shift", "equals": "Evening"}},
            ),
            QuestionDefinition(id="dishes", type="LINE_ITEM_GROUP", line_item_config=dishes),
        ))
        line_items = {"dishes": [row("d1", portions=10)]}

        self.assertEqual(validate_form(definition, {"shift": "Morning"}, line_items), [])

        errors = validate_form(definition, {"shift": "Evening"}, line_items)
        self.assertEqual(self.paths(errors), ["notes"])
        self.assertEqual(errors[0].kind, "rule")

    def test_validation_does_not_mutate_state(self):
        values = {"shift": "Evening"}
        line_items = {"dishes": [row("d1", dish="", portions="")]}
        validate_form(self.definition, values, line_items)
        self.assertEqual(values, {"shift": "Evening"})
        self.assertEqual(line_items["dishes"][0].values, {"dish": "", "portions": ""})


if __name__ == '__main__':
    unittest.main()
