"""
Test Suite for auto-add row reconciliation

Covers:
- Desired set computation (dependency validity, 0 as a value)
- Row diffing: reuse, drop, append, normalization
- Idempotence and signature gating
- Manual rows, rows owned by selection effects
- Sub-group instances
"""

import unittest

from formengine.contracts import (
    FormDefinition,
    LineItemGroupConfig,
    LineItemRowState,
    OptionFilter,
    OptionSet,
    QuestionDefinition,
    ValueMapConfig,
)
from formengine.core.line_items import (
    ROW_PARENT_ROW_ID_KEY,
    ROW_SELECTION_EFFECT_ID_KEY,
    ROW_SOURCE_KEY,
)
from formengine.core.reconciler import (
    build_auto_context_id,
    compute_auto_desired,
    is_valid_dependency_value,
    reconcile_auto_groups,
)
from formengine.utils.helpers import SequentialRowIds


ANCHOR = QuestionDefinition(
    id="dish",
    type="CHOICE",
    options=OptionSet(values=("a", "b", "c", "d")),
    option_filter=OptionFilter(
        depends_on=("dep",),
        option_map={"D1": ("a", "b", "c"), "D2": ("b",), "0": ("d",)},
        exclusive=True,
    ),
)

LABEL = QuestionDefinition(
    id="label",
    type="TEXT",
    value_map=ValueMapConfig(depends_on=("dish",), option_map={"a": ("Alpha",), "b": ("Beta",), "c": ("Gamma",)}),
)


def make_definition(anchor=ANCHOR):
    config = LineItemGroupConfig(
        id="g",
        fields=(anchor, QuestionDefinition(id="qty", type="NUMBER"), LABEL),
        add_mode="auto",
        anchor_field_id="dish",
    )
    return FormDefinition(questions=(
        QuestionDefinition(id="dep", type="CHOICE"),
        QuestionDefinition(id="g", type="LINE_ITEM_GROUP", line_item_config=config),
    ))


def anchors(rows):
    return [row.values.get("dish") for row in rows]


# =============================================================================
# PART 1: Desired set
# =============================================================================

class TestDesiredSet(unittest.TestCase):

    def test_valid_dependency_values(self):
        self.assertTrue(is_valid_dependency_value(0))
        self.assertTrue(is_valid_dependency_value(False))
        self.assertTrue(is_valid_dependency_value("D1"))
        self.assertFalse(is_valid_dependency_value(None))
        self.assertFalse(is_valid_dependency_value("  "))
        self.assertFalse(is_valid_dependency_value(float("nan")))
        self.assertFalse(is_valid_dependency_value([]))

    def test_desired_in_option_order(self):
        desired = compute_auto_desired(ANCHOR, ["D1"], ANCHOR.options)
        self.assertTrue(desired.valid)
        self.assertEqual(desired.desired, ("a", "b", "c"))

    def test_zero_is_a_real_dependency_value(self):
        desired = compute_auto_desired(ANCHOR, [0], ANCHOR.options)
        self.assertTrue(desired.valid)
        self.assertEqual(desired.desired, ("d",))

    def test_missing_dependency_is_invalid(self):
        for missing in (None, "", []):
            desired = compute_auto_desired(ANCHOR, [missing], ANCHOR.options)
            self.assertFalse(desired.valid)
            self.assertEqual(desired.desired, ())

    def test_anchor_without_depends_on_is_invalid(self):
        plain = QuestionDefinition(id="dish", type="CHOICE", options=ANCHOR.options)
        self.assertFalse(compute_auto_desired(plain, [], plain.options).valid)

    def test_context_id_is_deterministic(self):
        self.assertEqual(build_auto_context_id("g", ["D1"]), "__autoAddMode__:g:D1")
        self.assertEqual(build_auto_context_id("g", ["D1", 0]), build_auto_context_id("g", ["D1", "0"]))


# =============================================================================
# PART 2: Reconciling a top-level group
# =============================================================================

class TestReconcileTopLevel(unittest.TestCase):

    def setUp(self):
        self.definition = make_definition()
        self.ids = SequentialRowIds()

    def reconcile(self, values, line_items, previous=None):
        return reconcile_auto_groups(
            self.definition, values, line_items, self.ids, previous_signatures=previous,
        )

    def test_dependency_switch_reuses_surviving_row(self):
        first = self.reconcile({"dep": "D1"}, {"g": []})
        rows = first.line_items["g"]
        self.assertTrue(first.changed)
        self.assertEqual(anchors(rows), ["a", "b", "c"])
        self.assertEqual([r.id for r in rows], ["g_1", "g_2", "g_3"])
        self.assertTrue(all(r.auto_generated for r in rows))
        self.assertEqual(first.changed_targets, ("g",))

        second = self.reconcile({"dep": "D2"}, first.line_items, first.signatures)
        rows = second.line_items["g"]
        self.assertEqual(anchors(rows), ["b"])
        self.assertEqual(rows[0].id, "g_2")
        self.assertEqual(rows[0].effect_context_id, "__autoAddMode__:g:D2")

    def test_value_maps_run_after_rows_change(self):
        result = self.reconcile({"dep": "D1"}, {"g": []})
        self.assertEqual([r.values["label"] for r in result.line_items["g"]], ["Alpha", "Beta", "Gamma"])

    def test_repeat_pass_is_a_no_op(self):
        first = self.reconcile({"dep": "D1"}, {"g": []})
        again = self.reconcile({"dep": "D1"}, first.line_items)

        self.assertFalse(again.changed)
        self.assertIs(again.line_items, first.line_items)
        for before, after in zip(first.line_items["g"], again.line_items["g"]):
            self.assertIs(before, after)

    def test_user_removed_row_is_not_recreated_until_inputs_change(self):
        first = self.reconcile({"dep": "D1"}, {"g": []})
        trimmed = {"g": [r for r in first.line_items["g"] if r.values["dish"] != "a"]}

        same = self.reconcile({"dep": "D1"}, trimmed, first.signatures)
        self.assertFalse(same.changed)
        self.assertEqual(anchors(same.line_items["g"]), ["b", "c"])

        changed = self.reconcile({"dep": "D2"}, trimmed, same.signatures)
        self.assertEqual(anchors(changed.line_items["g"]), ["b"])

    def test_manual_rows_are_never_touched(self):
        manual = LineItemRowState(id="m1", values={"dish": "a", "qty": 2, "label": "Alpha"}, auto_generated=False)
        first = self.reconcile({"dep": "D1"}, {"g": [manual]})
        self.assertIs(first.line_items["g"][0], manual)
        self.assertEqual(anchors(first.line_items["g"]), ["a", "a", "b", "c"])

        second = self.reconcile({"dep": "D2"}, first.line_items, first.signatures)
        self.assertIs(second.line_items["g"][0], manual)
        self.assertEqual(anchors(second.line_items["g"]), ["a", "b"])

    def test_invalid_dependency_tears_down_auto_rows(self):
        manual = LineItemRowState(id="m1", values={"dish": "c", "label": "Gamma"}, auto_generated=False)
        first = self.reconcile({"dep": "D1"}, {"g": [manual]})
        second = self.reconcile({"dep": None}, first.line_items, first.signatures)
        self.assertEqual(second.line_items["g"], [manual])

    def test_duplicate_anchors_collapse_to_one_row(self):
        legacy = [
            LineItemRowState(id="x1", values={"dish": "b", ROW_SOURCE_KEY: "auto"}, auto_generated=True),
            LineItemRowState(id="x2", values={"dish": "b", ROW_SOURCE_KEY: "auto"}, auto_generated=True),
            LineItemRowState(id="x3", values={"dish": "z", ROW_SOURCE_KEY: "auto"}, auto_generated=True),
        ]
        result = self.reconcile({"dep": "D1"}, {"g": legacy})
        rows = result.line_items["g"]
        self.assertEqual(anchors(rows), ["b", "a", "c"])
        self.assertEqual(rows[0].id, "x1")
        self.assertEqual(len({r.values["dish"] for r in rows}), len(rows))

    def test_anchor_values_are_normalized(self):
        legacy = [LineItemRowState(id="x1", values={"dish": ["b"]}, auto_generated=True)]
        result = self.reconcile({"dep": "D2"}, {"g": legacy})
        row = result.line_items["g"][0]
        self.assertEqual(row.id, "x1")
        self.assertEqual(row.values["dish"], "b")
        self.assertEqual(row.values[ROW_SOURCE_KEY], "auto")

    def test_rows_owned_by_selection_effects_pass_through(self):
        effect_row = LineItemRowState(
            id="e1",
            values={"dish": "d", ROW_SELECTION_EFFECT_ID_KEY: "someEffect"},
            auto_generated=True,
            effect_context_id="__global__",
        )
        result = self.reconcile({"dep": "D2"}, {"g": [effect_row]})
        self.assertIs(result.line_items["g"][0], effect_row)
        self.assertEqual(anchors(result.line_items["g"]), ["d", "b"])

    def test_data_sourced_anchor_waits_for_options(self):
        sourced = QuestionDefinition(
            id="dish", type="CHOICE", data_source={"id": "dishes"}, option_filter=ANCHOR.option_filter,
        )
        definition = make_definition(sourced)
        line_items = {"g": []}

        waiting = reconcile_auto_groups(definition, {"dep": "D1"}, line_items, self.ids)
        self.assertFalse(waiting.changed)
        self.assertNotIn("g", waiting.signatures)

        loaded = reconcile_auto_groups(
            definition, {"dep": "D1"}, line_items, self.ids,
            option_sets={"dish": OptionSet(values=("c", "b", "a"))},
        )
        self.assertEqual(anchors(loaded.line_items["g"]), ["c", "b", "a"])


# =============================================================================
# PART 3: Auto sub-groups
# =============================================================================

class TestReconcileSubGroups(unittest.TestCase):

    def setUp(self):
        ingredients = LineItemGroupConfig(
            id="ingredients",
            fields=(QuestionDefinition(
                id="ingredient",
                type="CHOICE",
                options=OptionSet(values=("Lentils", "Carrot", "Rice")),
                option_filter=OptionFilter(
                    depends_on=("dish",),
                    option_map={"Soup": ("Lentils", "Carrot"), "Pilaf": ("Rice",)},
                    exclusive=True,
                ),
            ),),
            add_mode="auto",
            anchor_field_id="ingredient",
        )
        dishes = LineItemGroupConfig(
            id="dishes",
            fields=(QuestionDefinition(id="dish", type="TEXT"),),
            sub_groups=(ingredients,),
        )
        self.definition = FormDefinition(questions=(
            QuestionDefinition(id="dishes", type="LINE_ITEM_GROUP", line_item_config=dishes),
        ))
        self.ids = SequentialRowIds()

    def test_one_instance_per_parent_row(self):
        line_items = {"dishes": [
            LineItemRowState(id="r1", values={"dish": "Soup"}, auto_generated=False),
            LineItemRowState(id="r2", values={"dish": "Pilaf"}, auto_generated=False),
        ]}
        result = reconcile_auto_groups(self.definition, {}, line_items, self.ids)

        soup = result.line_items["dishes::r1::ingredients"]
        pilaf = result.line_items["dishes::r2::ingredients"]
        self.assertEqual([r.values["ingredient"] for r in soup], ["Lentils", "Carrot"])
        self.assertEqual([r.values["ingredient"] for r in pilaf], ["Rice"])
        self.assertEqual(soup[0].parent_id, "r1")
        self.assertEqual(soup[0].parent_group_id, "dishes")
        self.assertEqual(soup[0].values[ROW_PARENT_ROW_ID_KEY], "r1")
        self.assertEqual(set(result.signatures), {"dishes::r1::ingredients", "dishes::r2::ingredients"})

    def test_parent_change_only_touches_its_own_instance(self):
        line_items = {"dishes": [
            LineItemRowState(id="r1", values={"dish": "Soup"}, auto_generated=False),
            LineItemRowState(id="r2", values={"dish": "Pilaf"}, auto_generated=False),
        ]}
        first = reconcile_auto_groups(self.definition, {}, line_items, self.ids)

        changed = dict(first.line_items)
        changed["dishes"] = [
            LineItemRowState(id="r1", values={"dish": "Pilaf"}, auto_generated=False),
            first.line_items["dishes"][1],
        ]
        second = reconcile_auto_groups(self.definition, {}, changed, self.ids, previous_signatures=first.signatures)

        self.assertEqual(second.changed_targets, ("dishes::r1::ingredients",))
        self.assertIs(second.line_items["dishes::r2::ingredients"], first.line_items["dishes::r2::ingredients"])
        self.assertEqual([r.values["ingredient"] for r in second.line_items["dishes::r1::ingredients"]], ["Rice"])


if __name__ == '__main__':
    unittest.main()
