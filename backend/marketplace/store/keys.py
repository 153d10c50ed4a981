import random
import threading
import time

# ASCII ordered, so generated keys sort lexicographically by creation time.
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushKeyGenerator:
    """20-char keys: 8 chars of millisecond timestamp followed by 12 random chars.

    Two keys generated within the same millisecond increment the random tail,
    so keys stay unique and strictly increasing within a process.
    """

    def __init__(self, clock=time.time, rng: random.Random | None = None) -> None:
        self._clock = clock
        self._rng = rng or random.SystemRandom()
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_tail: list[int] = [0] * 12

    def __call__(self) -> str:
        with self._lock:
            now_ms = int(self._clock() * 1000)
            if now_ms <= self._last_ms:
                now_ms = self._last_ms
                self._increment_tail()
            else:
                self._last_tail = [self._rng.randrange(64) for _ in range(12)]
            self._last_ms = now_ms
            return _encode_time(now_ms) + "".join(PUSH_CHARS[i] for i in self._last_tail)

    def _increment_tail(self) -> None:
        for index in range(11, -1, -1):
            if self._last_tail[index] != 63:
                self._last_tail[index] += 1
                return
            self._last_tail[index] = 0
        raise RuntimeError("Push key space exhausted for this millisecond")


def _encode_time(now_ms: int) -> str:
    chars = []
    for _ in range(8):
        chars.append(PUSH_CHARS[now_ms % 64])
        now_ms //= 64
    return "".join(reversed(chars))
