"""One-shot completion signal for supervised processes.

A CompletionSignal delivers the terminal error of a process (or ``None`` on
clean exit) exactly once.  Two writers may race for it: the exit-wait task
of the hypervisor and the post-start network bootstrap.  The first writer
wins; later writes are dropped and logged so the single observable event
stays unambiguous for callers.
"""

from __future__ import annotations

import asyncio

from qemu_driver._logging import get_logger

logger = get_logger(__name__)


class CompletionSignal:
    """Write-once future carrying ``BaseException | None``.

    Example:
        ```python
        completion = await driver.start()
        err = await completion.wait()
        if err is not None:
            ...  # hypervisor crashed or network bootstrap failed
        ```
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._future: asyncio.Future[BaseException | None] = asyncio.get_running_loop().create_future()

    def set(self, error: BaseException | None) -> bool:
        """Deliver the terminal value.

        Returns:
            True if this call delivered the value, False if a value was
            already delivered (the new one is dropped).
        """
        if self._future.done():
            logger.debug(
                "Completion already delivered, dropping value",
                extra={"label": self.label, "dropped": repr(error)},
            )
            return False
        self._future.set_result(error)
        return True

    async def wait(self) -> BaseException | None:
        """Wait for the terminal value.

        Shielded: cancelling a waiter never cancels the signal itself.
        """
        return await asyncio.shield(self._future)

    def done(self) -> bool:
        return self._future.done()

    def value(self) -> BaseException | None:
        """Delivered value.

        Raises:
            asyncio.InvalidStateError: Nothing delivered yet
        """
        return self._future.result()

    def __repr__(self) -> str:
        state = repr(self._future.result()) if self._future.done() else "pending"
        return f"<CompletionSignal {self.label}: {state}>"
