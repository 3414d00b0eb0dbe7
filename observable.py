# observable.py
from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]


class Broadcast(Generic[T]):
    """
    1 producer / 多 consumer のチャネル。

    登録済みのリスナー全員に、publish された順で全ての値を届ける。
    購読は一度だけでよく、操作ごとに登録し直す必要はない。
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                # 1つのリスナーの失敗で他のリスナーへの配信を止めない
                logger.exception("Listener %r failed", listener)


class Observable(Generic[T]):
    """Value holder with change notification. Only the owner calls set()."""

    def __init__(self, initial: T) -> None:
        self._value = initial
        self.changes: Broadcast[T] = Broadcast()

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        self.changes.publish(value)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.changes.subscribe(listener)

    def __repr__(self) -> str:
        return f"Observable({self._value!r})"
