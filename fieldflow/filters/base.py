# fieldflow/filters/base.py
from abc import ABC


class AutomationFilter(ABC):
    def on_rule_election(self, elect_run_context):
        pass  # Default implementation lets the rule run
