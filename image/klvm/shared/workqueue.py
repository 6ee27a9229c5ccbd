# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import Queue
from typing import Optional

# ---------------------------------------------------------------------------- #


class QueueShutDown(Exception):
    pass


class WorkQueue:
    """
    Deduplicating queue of object keys.

    - A key that is already waiting in the queue is not added again.
    - A key that is added while a worker is processing it is not handed to
      another worker; it is queued again when the first worker calls done().
    - After shut_down(), get() raises QueueShutDown and add() is ignored. Keys
      already handed out may still be marked done.
    """

    __ready: Queue[Optional[str]]
    __dirty: set[str]
    __processing: set[str]
    __shutting_down: bool

    def __init__(self) -> None:

        self.__ready = Queue()
        self.__dirty = set()
        self.__processing = set()
        self.__shutting_down = False

    def __len__(self) -> int:
        return len(self.__dirty)

    @property
    def shutting_down(self) -> bool:
        return self.__shutting_down

    def add(self, key: str) -> None:

        if self.__shutting_down or key in self.__dirty:
            return

        self.__dirty.add(key)

        if key not in self.__processing:
            self.__ready.put_nowait(key)

    async def get(self) -> str:

        if self.__shutting_down:
            raise QueueShutDown

        key = await self.__ready.get()

        if key is None or self.__shutting_down:
            self.__ready.put_nowait(None)  # wake up the next waiting worker
            raise QueueShutDown

        self.__dirty.discard(key)
        self.__processing.add(key)

        return key

    def done(self, key: str) -> None:

        self.__processing.discard(key)

        if key in self.__dirty and not self.__shutting_down:
            self.__ready.put_nowait(key)

    def shut_down(self) -> None:

        if not self.__shutting_down:
            self.__shutting_down = True
            self.__ready.put_nowait(None)


# ---------------------------------------------------------------------------- #
