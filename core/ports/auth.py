from typing import Callable, Optional, Protocol


class AuthPort(Protocol):
    def get_current_session(self): ...

    def on_session_change(self, callback: Callable[[str, Optional[object]], object]) -> Callable[[], None]:
        """Register a callback for (event, session); returns an unsubscribe callable."""
        ...
