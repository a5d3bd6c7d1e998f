"""Identity - 系譜を埋め込んだ決定的ID生成

シートIDとポジション番号からカードIDを導出する。
状態もI/Oも持たない純粋関数のみ。

    J1044-S003 + 7  ->  J1044-S003-07
    J1044-S003      ->  A-J1044-S003  (セット)
    J1044-S003-05 の 1 回目の代替  ->  J1044-S003-05-R1
"""

from __future__ import annotations

import re

from .errors import InvalidPosition

DEFAULT_MAX_FAN_OUT = 99

ASSEMBLY_PREFIX = "A-"

# 集約IDに使える文字（ファイル名としても安全な範囲）
AGGREGATE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"

_AGGREGATE_ID = re.compile(AGGREGATE_ID_PATTERN)

_REPLACEMENT_SUFFIX = re.compile(r"^(?P<original>.+)-R(?P<attempt>\d+)$")
_CHILD_SUFFIX = re.compile(r"^(?P<parent>.+)-(?P<position>\d+)$")


def is_valid_id(value: str) -> bool:
    """外部から受け取った集約IDが使える形式か"""
    return bool(_AGGREGATE_ID.fullmatch(value))


def position_width(max_fan_out: int = DEFAULT_MAX_FAN_OUT) -> int:
    """ポジション部分の桁数（最大カード数の桁数で固定）"""
    return len(str(max_fan_out))


def child_id(
    parent_id: str,
    position: int,
    fan_out: int,
    max_fan_out: int = DEFAULT_MAX_FAN_OUT,
) -> str:
    """シートIDとポジションからカードIDを導出

    桁数を max_fan_out に合わせて固定するため、fan_out <= max_fan_out の
    範囲ではポジションが異なれば必ず異なるIDになる。

    Args:
        parent_id: シートID
        position: 1始まりのポジション番号
        fan_out: カット枚数 N
        max_fan_out: 設定上の最大カード数

    Returns:
        カードID

    Raises:
        InvalidPosition: position が [1, N] の範囲外、または N が上限を超える場合
    """
    if not parent_id:
        raise InvalidPosition("parent id must not be empty")
    if fan_out < 1 or fan_out > max_fan_out:
        raise InvalidPosition(f"fan-out {fan_out} outside [1, {max_fan_out}]")
    if position < 1 or position > fan_out:
        raise InvalidPosition(f"position {position} outside [1, {fan_out}]")
    return f"{parent_id}-{position:0{position_width(max_fan_out)}d}"


def child_ids(
    parent_id: str, fan_out: int, max_fan_out: int = DEFAULT_MAX_FAN_OUT
) -> tuple[str, ...]:
    """シートの全カードIDをポジション順に返す"""
    return tuple(
        child_id(parent_id, position, fan_out, max_fan_out) for position in range(1, fan_out + 1)
    )


def assembly_id(parent_id: str) -> str:
    """シートに対応するセットID"""
    return f"{ASSEMBLY_PREFIX}{parent_id}"


def replacement_id(original_id: str, attempt: int) -> str:
    """VOIDEDカードの代替カードID

    Args:
        original_id: 置き換え対象（VOIDED）のカードID
        attempt: 1始まりの代替回数
    """
    if attempt < 1:
        raise InvalidPosition(f"replacement attempt {attempt} must be >= 1")
    return f"{original_id}-R{attempt}"


def parse_child_id(card_id: str) -> tuple[str, int]:
    """カードIDから (シートID, ポジション) を復元

    代替カードIDは元カードの系譜として解釈する。

    Raises:
        InvalidPosition: カードIDの形式でない場合
    """
    base = card_id
    match = _REPLACEMENT_SUFFIX.match(base)
    while match:
        base = match.group("original")
        match = _REPLACEMENT_SUFFIX.match(base)

    match = _CHILD_SUFFIX.match(base)
    if not match:
        raise InvalidPosition(f"'{card_id}' is not a card id")
    return match.group("parent"), int(match.group("position"))
