# text_tokens.py
import logging
from itertools import chain, islice, repeat
from typing import Dict, Iterable, List, Type

logger = logging.getLogger(__name__)

CONTEXT_LENGTH = 77


def build_token_sequence(token_ids: Iterable[int],
                         sot_token: int,
                         eot_token: int,
                         max_len: int = CONTEXT_LENGTH) -> List[int]:
    """
    First ``max_len`` items of ``[sot, *token_ids, eot, eot, eot, ...]``.

    Short inputs are right-padded with ``eot``. Long inputs are cut at
    ``max_len``; the closing ``eot`` is dropped in that case, which is the
    behaviour pretrained CLIP text towers were exported with.
    """
    if max_len <= 0:
        raise ValueError(f"max_len must be positive, got {max_len}")
    stream = chain([sot_token], token_ids, repeat(eot_token))
    return [int(t) for t in islice(stream, max_len)]


class Tokenizer:
    """Tokenizer capability: start/end sentinels plus ``encode(text)``."""
    sot_token: int
    eot_token: int

    def encode(self, text: str) -> List[int]:
        raise NotImplementedError


class OpenClipTokenizer(Tokenizer):
    """OpenAI CLIP byte-level BPE, as bundled with open_clip."""
    name = "open_clip"

    def __init__(self, name: str = None):
        from open_clip.tokenizer import SimpleTokenizer

        self._tok = SimpleTokenizer()
        self.sot_token = int(self._tok.encoder["<start_of_text>"])
        self.eot_token = int(self._tok.encoder["<end_of_text>"])

    def encode(self, text: str) -> List[int]:
        return list(self._tok.encode(text))


class HFClipTokenizer(Tokenizer):
    """Hugging Face ``CLIPTokenizer``; special tokens are added by the sequence builder."""
    name = "hf"

    def __init__(self, name: str = "openai/clip-vit-base-patch32"):
        from transformers import CLIPTokenizer

        self._tok = CLIPTokenizer.from_pretrained(name)
        self.sot_token = int(self._tok.bos_token_id)
        self.eot_token = int(self._tok.eos_token_id)

    def encode(self, text: str) -> List[int]:
        return list(self._tok.encode(text, add_special_tokens=False))


TOKENIZER_BACKENDS: Dict[str, Type[Tokenizer]] = {
    OpenClipTokenizer.name: OpenClipTokenizer,
    HFClipTokenizer.name: HFClipTokenizer,
}


def build_tokenizer(backend: str = "open_clip", name: str = None) -> Tokenizer:
    try:
        cls = TOKENIZER_BACKENDS[backend.lower()]
    except KeyError:
        raise ValueError(f"Unknown tokenizer backend '{backend}'. Choose from {sorted(TOKENIZER_BACKENDS)}")
    tok = cls(name) if name else cls()
    logger.info("Loaded %s tokenizer (sot=%d, eot=%d)", cls.name, tok.sot_token, tok.eot_token)
    return tok
