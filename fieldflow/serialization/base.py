# fieldflow/serialization/base.py
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from fieldflow.common.automation import ActionResult, ActionSpec, Condition


class BaseSerializer(ABC):
    @abstractmethod
    def serialize_payload(self, data: Dict[str, Any]) -> str: ...

    @abstractmethod
    def deserialize_payload(self, data: str) -> Dict[str, Any]: ...

    @abstractmethod
    def serialize_list(self, data: List[Any]) -> str: ...

    @abstractmethod
    def deserialize_list(self, data: str) -> List[Any]: ...

    @abstractmethod
    def serialize_conditions(self, conditions: List[Condition]) -> str: ...

    @abstractmethod
    def deserialize_conditions(self, data: str) -> List[Condition]: ...

    @abstractmethod
    def serialize_actions(self, actions: List[ActionSpec]) -> str: ...

    @abstractmethod
    def deserialize_actions(self, data: str) -> List[ActionSpec]: ...

    @abstractmethod
    def serialize_action_results(self, results: List[ActionResult]) -> str: ...

    @abstractmethod
    def deserialize_action_results(self, data: str) -> List[ActionResult]: ...
