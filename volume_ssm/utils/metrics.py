import numpy as np


def calculate_mae(actual: np.ndarray, predicted: np.ndarray) -> float:
    """平均绝对误差: mean(|y_hat - y|)"""
    actual = np.asarray(actual, dtype=np.float64)
    predicted = np.asarray(predicted, dtype=np.float64)
    return float(np.mean(np.abs(predicted - actual)))


def calculate_mape(actual: np.ndarray, predicted: np.ndarray) -> float:
    """平均绝对百分比误差: mean(|y_hat - y| / y)，y 必须为正"""
    actual = np.asarray(actual, dtype=np.float64)
    predicted = np.asarray(predicted, dtype=np.float64)
    return float(np.mean(np.abs(predicted - actual) / actual))


def calculate_rmse(actual: np.ndarray, predicted: np.ndarray) -> float:
    """均方根误差: sqrt(mean((y_hat - y)^2))"""
    actual = np.asarray(actual, dtype=np.float64)
    predicted = np.asarray(predicted, dtype=np.float64)
    return float(np.sqrt(np.mean((predicted - actual) ** 2)))


def error_summary(actual: np.ndarray, predicted: np.ndarray) -> dict:
    return {
        "mae": calculate_mae(actual, predicted),
        "mape": calculate_mape(actual, predicted),
        "rmse": calculate_rmse(actual, predicted),
    }
