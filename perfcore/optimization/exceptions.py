"""性能层异常定义"""


class PerfCoreError(Exception):
    """性能层所有异常的基类"""


class CacheError(PerfCoreError):
    """缓存条目异常（例如单个条目超过内存上限），只记录日志，不会从 get/set 抛出"""


class OperationError(PerfCoreError):
    """调度操作失败"""


class TransientOperationError(OperationError):
    """可重试的瞬时错误（超时、暂时不可用等）"""


class PermanentOperationError(OperationError):
    """不可重试的错误，直接向调用方传播"""


class RetryExhaustedError(OperationError):
    """瞬时错误重试次数耗尽"""

    def __init__(self, operation_id: str, attempts: int, last_error: BaseException | None = None):
        self.operation_id = operation_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"操作 {operation_id} 在 {attempts} 次尝试后仍失败，已达到最大重试次数: {last_error}")


class BatchError(PerfCoreError):
    """批次整体执行失败，批次内每个成员收到同一个异常"""

    def __init__(self, message: str, operation_type: str = "", chunk_size: int = 0):
        self.operation_type = operation_type
        self.chunk_size = chunk_size
        super().__init__(message)


class ResourceError(PerfCoreError):
    """资源探针不可用"""
