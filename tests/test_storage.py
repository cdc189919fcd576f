from inbox_automation.models import ExecutedRule, ExecutedRuleStatus, Group, GroupItem, GroupItemType

from conftest import action, make_rule


def test_rules_round_trip_with_actions(store):
	store.save_rule(make_rule("r1", actions=[action("LABEL", label="News"), action("ARCHIVE")], from_pattern="*@news.com"))
	rule = store.get_rule("r1")
	assert [a.type.value for a in rule.actions] == ["LABEL", "ARCHIVE"]
	assert rule.from_pattern == "*@news.com"
	store.disable_rule("r1")
	assert store.get_rules("mb1")[0].enabled is False


def test_executed_rule_is_unique_per_run_key(store):
	assert store.create_executed_rule(ExecutedRule(mailbox_id="mb1", message_id="m1", thread_id="t1")) is not None
	assert store.create_executed_rule(ExecutedRule(mailbox_id="mb1", message_id="m1", thread_id="t1")) is None
	assert store.create_executed_rule(ExecutedRule(mailbox_id="mb1", message_id="m1", thread_id="t1", run_key="rerun-1")) is not None
	assert store.count_executed_rules("mb1", "m1") == 2


def test_applied_rules_in_thread_excludes_current_message(store):
	for message_id, status in (("m1", ExecutedRuleStatus.APPLIED), ("m2", ExecutedRuleStatus.ERROR), ("m3", ExecutedRuleStatus.APPLIED)):
		executed = store.create_executed_rule(ExecutedRule(mailbox_id="mb1", message_id=message_id, thread_id="t1", rule_id=f"rule-{message_id}"))
		executed.status = status
		store.update_executed_rule(executed)
	assert store.applied_rule_ids_in_thread("mb1", "t1", exclude_message_id="m3") == {"rule-m1"}


def test_groups_are_stored_per_mailbox(store):
	store.save_group(Group(id="g1", mailbox_id="mb1", name="Suppliers", items=[GroupItem(GroupItemType.FROM, "@flour.example")]))
	store.save_group(Group(id="g2", mailbox_id="mb2", name="Other"))
	store.save_group(Group(id="g1", mailbox_id="mb1", name="Suppliers", items=[GroupItem(GroupItemType.SUBJECT, "invoice", exclude=True)]))
	groups = store.get_groups("mb1")
	assert [g.id for g in groups] == ["g1"]
	assert groups[0].items[0].type == GroupItemType.SUBJECT
	assert groups[0].items[0].exclude is True
