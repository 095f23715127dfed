# /clinicbot/workflows/registry.py

"""
Read-only lookup table over the flow definitions.

The registry is built once and shared by every session without locking:
nothing here mutates after construction. A session that still references a
retired flow is repaired by `load_state`, so adding or removing flows never
needs a session migration.
"""

from types import MappingProxyType
from typing import Dict, Mapping, Optional

from clinicbot.models.flow import Flow, Step
from clinicbot.workflows.definitions import FLOWS


class FlowRegistry:
    def __init__(self, flows: Optional[Mapping[str, Flow]] = None):
        source = FLOWS if flows is None else flows
        self._flows: Mapping[str, Flow] = MappingProxyType(dict(source))
        self._steps: Dict[str, Mapping[str, Step]] = {
            flow_id: MappingProxyType({step.id: step for step in flow.steps})
            for flow_id, flow in self._flows.items()
        }
        self._by_intent: Dict[str, str] = {
            intent: flow_id
            for flow_id, flow in self._flows.items()
            for intent in flow.start_intents
        }

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        if not flow_id:
            return None
        return self._flows.get(flow_id)

    def get_step(self, flow_id: str, step_id: str) -> Optional[Step]:
        steps = self._steps.get(flow_id)
        if steps is None or not step_id:
            return None
        return steps.get(step_id)

    def first_step_id(self, flow_id: str) -> Optional[str]:
        flow = self.get_flow(flow_id)
        if flow is None or not flow.steps:
            return None
        return flow.steps[0].id

    def next_step_id(self, flow_id: str, current_step_id: str) -> Optional[str]:
        """
        Returns the id of the step after `current_step_id`, or None when the
        current step is the last one (the flow completes).
        """
        flow = self.get_flow(flow_id)
        if flow is None:
            return None
        ids = flow.step_ids
        if current_step_id not in ids:
            return None
        position = ids.index(current_step_id) + 1
        return ids[position] if position < len(ids) else None

    def flow_for_intent(self, intent_name: str) -> Optional[Flow]:
        flow_id = self._by_intent.get(intent_name)
        return self._flows.get(flow_id) if flow_id else None

    def is_valid_position(self, flow_id: str, step_id: str) -> bool:
        if not flow_id:
            return not step_id
        if flow_id not in self._flows:
            return False
        if not step_id:
            return False
        return self.get_step(flow_id, step_id) is not None


registry = FlowRegistry()
