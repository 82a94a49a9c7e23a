import secrets
from constants import ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    # 6 chars from a 36-symbol alphabet is ~31 bits
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))
