from typing import Union

import numpy as np
import pandas as pd

from volume_ssm.exceptions import (
    EmptyResultError,
    InvalidInputError,
    MissingDataWarning,
)
from volume_ssm.utils.diagnostics import DiagnosticLog

VolumeInput = Union[np.ndarray, pd.DataFrame, pd.Series]


def _is_time_indexed(data) -> bool:
    # 多列 DataFrame 始终按 bins x days 矩阵处理，索引只是 bin 标签
    if isinstance(data, pd.DataFrame) and data.shape[1] != 1:
        return False
    return isinstance(data, (pd.Series, pd.DataFrame)) and isinstance(
        data.index, pd.DatetimeIndex
    )


def time_indexed_to_grid(data: Union[pd.Series, pd.DataFrame]) -> pd.DataFrame:
    """
    将以时间戳为索引的成交量序列转换为 bins x days 矩阵
    Args:
        data: DatetimeIndex 索引的 Series，或只有一列的 DataFrame

    Returns:
        行为日内时刻、列为交易日期的 DataFrame，缺失的 bin 为 NaN
    """
    if isinstance(data, pd.DataFrame):
        if data.shape[1] != 1:
            raise InvalidInputError(
                "time-indexed volume table must have exactly one column, "
                f"got {data.shape[1]}"
            )
        data = data.iloc[:, 0]
    if not pd.api.types.is_numeric_dtype(data.dtype):
        raise InvalidInputError("time-indexed volume table must be numeric")

    index = data.index
    frame = pd.DataFrame(
        {"volume": data.to_numpy(), "day": index.normalize(), "bin": index.time}
    )
    # 同一时刻重复记录视为数据错误
    if frame.duplicated(subset=["day", "bin"]).any():
        raise InvalidInputError("time-indexed volume table has duplicated timestamps")
    grid = frame.pivot(index="bin", columns="day", values="volume").sort_index()
    grid.columns = [day.date() for day in grid.columns]
    return grid


def to_volume_grid(data: VolumeInput) -> tuple[pd.DataFrame, str]:
    """Convert accepted input forms into a bins x days DataFrame."""
    if _is_time_indexed(data):
        return time_indexed_to_grid(data), "time-indexed table"

    if isinstance(data, pd.DataFrame):
        non_numeric = [
            col for col in data.columns if not pd.api.types.is_numeric_dtype(data[col])
        ]
        if non_numeric:
            raise InvalidInputError(
                f"data must be numeric, non-numeric days: {non_numeric}"
            )
        return data.astype(np.float64), "matrix"

    if isinstance(data, np.ndarray):
        if data.ndim != 2:
            raise InvalidInputError(
                f"data must be a 2-D bins x days array, got {data.ndim} dimension(s)"
            )
        if not np.issubdtype(data.dtype, np.number):
            raise InvalidInputError(f"data must be numeric, got dtype {data.dtype}")
        return pd.DataFrame(data.astype(np.float64)), "matrix"

    raise InvalidInputError(
        "data must be a 2-D numpy array, a bins x days DataFrame or a "
        f"time-indexed Series/DataFrame, got {type(data).__name__}"
    )


def clean_data(data: VolumeInput, log: DiagnosticLog = None) -> pd.DataFrame:
    """
    清洗成交量矩阵：删除存在缺失 bin 的交易日，并检查成交量为正

    对数变换由调用方完成，因此本函数既可用于原始成交量，也可用于误差计算。

    Args:
        data: bins x days 的 numpy 数组或 DataFrame，或 DatetimeIndex 索引的序列
        log: 可选的诊断日志，删除交易日时记录 MissingDataWarning

    Returns:
        清洗后的 bins x days DataFrame，bin 数不变，交易日可能减少

    Raises:
        InvalidInputError: 输入类型或维度错误，或存在非正成交量
        EmptyResultError: 所有交易日都被删除
    """
    grid, kind = to_volume_grid(data)
    if grid.shape[0] == 0 or grid.shape[1] == 0:
        raise InvalidInputError(f"data must be non-empty, got shape {grid.shape}")

    # 1. 删除含有缺失 bin 的交易日（整列删除）
    missing_days = grid.columns[grid.isna().any(axis=0)]
    if len(missing_days) > 0:
        labels = ", ".join(str(day) for day in missing_days)
        message = (
            f"For input {kind}:\n Remove trading days with missing bins: {labels}.\n"
        )
        if log is None:
            log = DiagnosticLog()
        log.warn(message, MissingDataWarning, dropped_days=list(missing_days))
        grid = grid.drop(columns=missing_days)

    if grid.shape[1] == 0:
        raise EmptyResultError("all trading days were removed because of missing bins")

    # 2. 成交量必须有限且为正，否则无法取对数
    values = grid.to_numpy()
    if not np.isfinite(values).all():
        raise InvalidInputError("data contains infinite volumes")
    if (values <= 0).any():
        bad_days = grid.columns[(grid <= 0).any(axis=0)]
        raise InvalidInputError(
            "volumes must be strictly positive, non-positive values found in days: "
            + ", ".join(str(day) for day in bad_days)
        )

    return grid
