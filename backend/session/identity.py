"""Peer id generation: short numeric ids, random per session."""

import random

from config import PEER_ID_LENGTH

DIGITS = "0123456789"


def generate_peer_id(length: int = PEER_ID_LENGTH) -> str:
    return "".join(random.choice(DIGITS) for _ in range(length))
