from __future__ import annotations

import hashlib
import hmac
from typing import Optional


P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
A = 0
B = 7
G = (
    55066263022277343669578718895168534326250603453777594175500187360389116729240,
    32670510020758816978083085130507043184471273380659243275938904335757337482424,
)

# Top bit of `s` in a compact signature carries the recovery flag.
FLAG_BIT = 1 << 255

Point = Optional[tuple[int, int]]


class SignatureError(ValueError):
    pass


def _mod_inv(value: int, modulus: int) -> int:
    return pow(value, -1, modulus)


def _is_on_curve(point: Point) -> bool:
    if point is None:
        return True
    x, y = point
    return (y * y - (x * x * x + A * x + B)) % P == 0


def _point_add(p1: Point, p2: Point) -> Point:
    if p1 is None:
        return p2
    if p2 is None:
        return p1

    x1, y1 = p1
    x2, y2 = p2

    if x1 == x2 and (y1 + y2) % P == 0:
        return None

    if p1 == p2:
        slope = ((3 * x1 * x1 + A) * _mod_inv((2 * y1) % P, P)) % P
    else:
        slope = ((y2 - y1) * _mod_inv((x2 - x1) % P, P)) % P

    x3 = (slope * slope - x1 - x2) % P
    y3 = (slope * (x1 - x3) - y1) % P
    point = (x3, y3)

    if not _is_on_curve(point):
        raise ValueError("Point operation produced invalid curve point")
    return point


def _point_mul(scalar: int, point: Point = G) -> Point:
    if scalar % N == 0 or point is None:
        return None

    scalar = scalar % N
    result: Point = None
    addend: Point = point

    while scalar:
        if scalar & 1:
            result = _point_add(result, addend)
        addend = _point_add(addend, addend)
        scalar >>= 1

    return result


def _lift_x(x: int, odd: bool) -> Point:
    if not 0 <= x < P:
        return None
    y_sq = (pow(x, 3, P) + B) % P
    y = pow(y_sq, (P + 1) // 4, P)
    if (y * y) % P != y_sq:
        return None
    if (y % 2 == 1) != odd:
        y = P - y
    return (x, y)


def _deterministic_k(private_key: int, message_hash: bytes) -> int:
    x = private_key.to_bytes(32, "big")
    h1 = message_hash
    v = b"\x01" * 32
    k = b"\x00" * 32

    k = hmac.new(k, v + b"\x00" + x + h1, hashlib.sha256).digest()
    v = hmac.new(k, v, hashlib.sha256).digest()
    k = hmac.new(k, v + b"\x01" + x + h1, hashlib.sha256).digest()
    v = hmac.new(k, v, hashlib.sha256).digest()

    while True:
        t = b""
        while len(t) < 32:
            v = hmac.new(k, v, hashlib.sha256).digest()
            t += v

        candidate = int.from_bytes(t[:32], "big")
        if 1 <= candidate < N:
            return candidate

        k = hmac.new(k, v + b"\x00", hashlib.sha256).digest()
        v = hmac.new(k, v, hashlib.sha256).digest()


def message_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _parse_private_key(private_key_hex: str) -> int:
    private_key = int(private_key_hex, 16)
    if not 1 <= private_key < N:
        raise SignatureError("Invalid private key")
    return private_key


def encode_public_key(point: tuple[int, int]) -> bytes:
    """Uncompressed 64-byte form, x || y, without the SEC1 prefix."""
    x, y = point
    return x.to_bytes(32, "big") + y.to_bytes(32, "big")


def private_key_to_public_key(private_key_hex: str) -> bytes:
    point = _point_mul(_parse_private_key(private_key_hex), G)
    if point is None:
        raise SignatureError("Could not derive public key")
    return encode_public_key(point)


def sign_recoverable(private_key_hex: str, message: bytes) -> tuple[int, int, int]:
    """Sign a 32-byte message, returning (r, s, recovery_id) with low-s.

    Bit 0 of the recovery id is the parity of R.y, bit 1 is set when R.x
    was reduced modulo N.
    """
    if len(message) != 32:
        raise SignatureError("Message must be 32 bytes")

    private_key = _parse_private_key(private_key_hex)
    z = int.from_bytes(message, "big")
    k = _deterministic_k(private_key, message)

    while True:
        point = _point_mul(k, G)
        if point is None:
            k = (k + 1) % N
            continue

        r = point[0] % N
        if r == 0:
            k = (k + 1) % N
            continue

        s = (_mod_inv(k, N) * (z + r * private_key)) % N
        if s == 0:
            k = (k + 1) % N
            continue

        recovery_id = (point[1] & 1) | (2 if point[0] >= N else 0)
        if s > N // 2:
            s = N - s
            recovery_id ^= 1

        return r, s, recovery_id


def sign_compact(private_key_hex: str, message: bytes) -> bytes:
    r, s, recovery_id = sign_recoverable(private_key_hex, message)
    if recovery_id & 2:
        raise SignatureError("Reduced-x recovery id cannot be encoded in a compact signature")
    if recovery_id & 1:
        s |= FLAG_BIT
    return r.to_bytes(32, "big") + s.to_bytes(32, "big")


def split_compact(signature: bytes) -> tuple[int, int, bool]:
    if len(signature) != 64:
        raise SignatureError("Compact signature must be 64 bytes")
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    return r, s & ~FLAG_BIT, bool(s & FLAG_BIT)


def recover_public_key(message: bytes, r: int, s: int, recovery_id: int) -> bytes:
    if len(message) != 32:
        raise SignatureError("Message must be 32 bytes")
    if not (1 <= r < N and 1 <= s < N):
        raise SignatureError("Signature scalars out of range")
    if recovery_id not in (0, 1, 2, 3):
        raise SignatureError(f"Invalid recovery id {recovery_id}")

    x = r + N if recovery_id & 2 else r
    point_r = _lift_x(x, odd=bool(recovery_id & 1))
    if point_r is None:
        raise SignatureError("Signature does not map to a curve point")

    z = int.from_bytes(message, "big")
    r_inv = _mod_inv(r, N)
    u1 = (-z * r_inv) % N
    u2 = (s * r_inv) % N
    public_point = _point_add(_point_mul(u1, G), _point_mul(u2, point_r))
    if public_point is None:
        raise SignatureError("Recovered point at infinity")
    return encode_public_key(public_point)


def recover_compact(message: bytes, signature: bytes) -> bytes:
    r, s, flag = split_compact(signature)
    return recover_public_key(message, r, s, int(flag))
