"""
Reasoning filter for streamed model output.

Hides everything between <think> and </think> and strips the <final> /
</final> wrapper tags from the visible text. Delimiters may be split
across chunks, so a possible partial delimiter at the end of a chunk is
held back until the next chunk decides it.

Usage:
    f = ReasoningFilter()
    for chunk in chunks:
        visible = f.feed(chunk)
    visible += f.flush()
"""

from typing import Iterable, Tuple


class ReasoningFilter:
    HIDDEN_START = "<think>"
    HIDDEN_END = "</think>"
    WRAPPERS: Tuple[str, ...] = ("<final>", "</final>")

    def __init__(self):
        self.inside_hidden_block = False
        self._pending = ""

    @staticmethod
    def _partial_suffix_len(text: str, tokens: Iterable[str]) -> int:
        """Length of the longest suffix of text that is a proper prefix of a token."""
        tokens = list(tokens)
        longest = max(len(t) for t in tokens) - 1
        for size in range(min(len(text), longest), 0, -1):
            tail = text[-size:]
            if any(t.startswith(tail) for t in tokens):
                return size
        return 0

    def feed(self, chunk: str) -> str:
        """Consume a chunk and return the text that is safe to show."""
        buf = self._pending + chunk
        self._pending = ""
        visible = []
        pos = 0

        while pos < len(buf):
            if self.inside_hidden_block:
                end = buf.find(self.HIDDEN_END, pos)
                if end == -1:
                    keep = self._partial_suffix_len(buf[pos:], (self.HIDDEN_END,))
                    if keep:
                        self._pending = buf[-keep:]
                    break
                pos = end + len(self.HIDDEN_END)
                self.inside_hidden_block = False
                continue

            tokens = (self.HIDDEN_START,) + self.WRAPPERS
            hits = [(buf.find(t, pos), t) for t in tokens]
            hits = [(idx, t) for idx, t in hits if idx != -1]
            if not hits:
                tail = buf[pos:]
                keep = self._partial_suffix_len(tail, tokens)
                if keep:
                    visible.append(tail[:-keep])
                    self._pending = tail[-keep:]
                else:
                    visible.append(tail)
                break

            idx, token = min(hits)
            visible.append(buf[pos:idx])
            pos = idx + len(token)
            if token == self.HIDDEN_START:
                self.inside_hidden_block = True

        return "".join(visible)

    def flush(self) -> str:
        """End of stream: release held-back text unless it was hidden."""
        pending, self._pending = self._pending, ""
        if self.inside_hidden_block:
            return ""
        return pending


def strip_reasoning(text: str) -> str:
    f = ReasoningFilter()
    return f.feed(text) + f.flush()
