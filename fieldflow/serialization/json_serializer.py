# fieldflow/serialization/json_serializer.py
import json
import logging
from typing import Any, Dict, List

from fieldflow.common.automation import ActionResult, ActionSpec, Condition
from fieldflow.serialization.base import BaseSerializer

logger = logging.getLogger(__name__)


class JsonSerializer(BaseSerializer):
    def serialize_payload(self, data: Dict[str, Any]) -> str:
        if not data:
            return "{}"
        return json.dumps(data, default=str)

    def deserialize_payload(self, data: str) -> Dict[str, Any]:
        loaded = self._loads(data, {})
        return loaded if isinstance(loaded, dict) else {}

    def serialize_list(self, data: List[Any]) -> str:
        return json.dumps(list(data or []), default=str)

    def deserialize_list(self, data: str) -> List[Any]:
        loaded = self._loads(data, [])
        return loaded if isinstance(loaded, list) else []

    def serialize_conditions(self, conditions: List[Condition]) -> str:
        return self.serialize_list([c.to_dict() for c in conditions])

    def deserialize_conditions(self, data: str) -> List[Condition]:
        return [Condition.from_dict(c) for c in self.deserialize_list(data)]

    def serialize_actions(self, actions: List[ActionSpec]) -> str:
        return self.serialize_list([a.to_dict() for a in actions])

    def deserialize_actions(self, data: str) -> List[ActionSpec]:
        return [ActionSpec.from_dict(a) for a in self.deserialize_list(data)]

    def serialize_action_results(self, results: List[ActionResult]) -> str:
        return self.serialize_list([r.to_dict() for r in results])

    def deserialize_action_results(self, data: str) -> List[ActionResult]:
        return [ActionResult.from_dict(r) for r in self.deserialize_list(data)]

    def _loads(self, data: Any, default: Any) -> Any:
        if not data:
            return default
        if isinstance(data, (dict, list)):
            return data
        try:
            return json.loads(data)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Discarding undecodable JSON column value: %r", data)
            return default
