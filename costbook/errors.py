class CostbookError(Exception):
    """costbook 共通の基底例外"""


class SplitValidationError(CostbookError):
    """書き込み前に検出した分割入力の不備"""


class ImportFileError(CostbookError):
    """未対応または読めないアップロードファイル"""


class RemoteError(CostbookError):
    """リモートテーブル操作の失敗"""

    def __init__(self, table: str, operation: str, message: str, status_code: int = None):
        self.table = table
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation} {table} failed: {message}")
