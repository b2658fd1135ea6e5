from dataclasses import dataclass
from typing import Any, Optional, Protocol


class MessageComposer(Protocol):
    def warning(
        self, idle_minutes: Optional[int] = None, close_minutes: Optional[int] = None
    ) -> str: ...

    def closure(self) -> str: ...

    def resolution(self) -> str: ...


@dataclass(frozen=True)
class TemplateComposer:
    warning_template: str
    generic_warning: str
    closure_text: str
    resolution_text: str

    @classmethod
    def from_settings(cls, messages: Any) -> "TemplateComposer":
        return cls(
            warning_template=messages.warning,
            generic_warning=messages.generic_warning,
            closure_text=messages.closure,
            resolution_text=messages.resolved,
        )

    def warning(
        self, idle_minutes: Optional[int] = None, close_minutes: Optional[int] = None
    ) -> str:
        if idle_minutes is None or close_minutes is None:
            return self.generic_warning
        return self.warning_template.format(
            idle_minutes=idle_minutes, close_minutes=close_minutes
        )

    def closure(self) -> str:
        return self.closure_text

    def resolution(self) -> str:
        return self.resolution_text
