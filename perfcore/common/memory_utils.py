"""
缓存条目的内存大小估算策略

AdaptiveCache 通过 size_estimator 参数接收这里的任意一个估算函数，
也可以传入自定义的 Callable[[Any], int]。
"""

import pickle
import sys
from collections.abc import Callable
from typing import Any

import numpy as np
import orjson

SizeEstimator = Callable[[Any], int]

# 大型容器超过该数量时只采样估算
SAMPLE_THRESHOLD = 100
_SAMPLE_EDGE = 50


def _sample(items: list) -> list:
    """大容器采样：前50 + 中间50 + 最后50"""
    mid = len(items) // 2
    return items[:_SAMPLE_EDGE] + items[mid - _SAMPLE_EDGE // 2 : mid + _SAMPLE_EDGE // 2] + items[-_SAMPLE_EDGE:]


def estimate_deep_size(obj: Any, max_depth: int = 5, sample_large: bool = True) -> int:
    """
    深度受限的递归估算

    - 对 numpy 数组按 nbytes 计入缓冲区
    - 对超过 SAMPLE_THRESHOLD 项的容器按采样结果等比推算
    - 通过 id 去重避免循环引用
    """
    return _estimate_recursive(obj, max_depth, set(), sample_large)


def _estimate_recursive(obj: Any, depth: int, seen: set, sample_large: bool) -> int:
    if depth <= 0:
        return sys.getsizeof(obj)

    obj_id = id(obj)
    if obj_id in seen:
        return 0
    seen.add(obj_id)

    size = sys.getsizeof(obj)

    if isinstance(obj, int | float | bool | type(None) | str | bytes | bytearray):
        return size

    if isinstance(obj, np.ndarray):
        return size + obj.nbytes

    if isinstance(obj, dict):
        items = list(obj.items())
        chosen = _sample(items) if sample_large and len(items) > SAMPLE_THRESHOLD else items
        partial = sum(
            _estimate_recursive(k, depth - 1, seen, sample_large) + _estimate_recursive(v, depth - 1, seen, sample_large)
            for k, v in chosen
        )
        return size + int(partial * len(items) / len(chosen)) if chosen else size

    if isinstance(obj, list | tuple | set | frozenset):
        items = list(obj)
        chosen = _sample(items) if sample_large and len(items) > SAMPLE_THRESHOLD else items
        partial = sum(_estimate_recursive(item, depth - 1, seen, sample_large) for item in chosen)
        return size + int(partial * len(items) / len(chosen)) if chosen else size

    if hasattr(obj, "__dict__"):
        size += _estimate_recursive(obj.__dict__, depth - 1, seen, sample_large)

    return size


def estimate_pickle_size(obj: Any) -> int:
    """pickle 序列化后的字节数，不可序列化时返回 0"""
    try:
        return len(pickle.dumps(obj, protocol=pickle.HIGHEST_PROTOCOL))
    except Exception:
        return 0


def estimate_json_size(obj: Any) -> int:
    """
    按 JSON 文本长度估算：字符数 × 2（按 UTF-16 字符串计）

    与编辑器侧的缓存估算口径一致，适合缓存的是可序列化的诊断/补全结果的场景。
    不可序列化时退回到 sys.getsizeof。
    """
    try:
        return len(orjson.dumps(obj, option=orjson.OPT_SERIALIZE_NUMPY).decode("utf-8")) * 2
    except (TypeError, orjson.JSONEncodeError):
        return sys.getsizeof(obj)


def estimate_conservative_size(obj: Any) -> int:
    """
    取深度递归与 pickle 两种估值中的较大者

    避免大量嵌套对象被低估，默认策略。
    """
    try:
        deep_size = estimate_deep_size(obj, max_depth=10, sample_large=False)
    except Exception:
        deep_size = 0

    best = max(deep_size, estimate_pickle_size(obj))
    return best or sys.getsizeof(obj)


SIZE_ESTIMATORS: dict[str, SizeEstimator] = {
    "deep": estimate_deep_size,
    "pickle": estimate_pickle_size,
    "json": estimate_json_size,
    "conservative": estimate_conservative_size,
}


def get_size_estimator(name: str) -> SizeEstimator:
    """按名称获取估算策略"""
    try:
        return SIZE_ESTIMATORS[name]
    except KeyError:
        raise ValueError(f"未知的大小估算策略: {name}，可选: {', '.join(SIZE_ESTIMATORS)}") from None


def format_size(size_bytes: int) -> str:
    """格式化字节数为人类可读的格式，如 "1.23 MB" """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.2f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.2f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.2f} GB"
