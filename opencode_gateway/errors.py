from __future__ import annotations

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """
    リクエスト単位の失敗。HTTPステータスとOpenAI風のerror typeを持つ。
    main.py の例外ハンドラで {"error": {...}} に変換される。
    """

    status_code: int = 500
    error_type: str = "proxy_error"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.message, "type": self.error_type}
        if self.detail:
            body["detail"] = self.detail
        return {"error": body}


class InvalidRequest(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class Unauthorized(GatewayError):
    status_code = 401
    error_type = "authentication_error"


class BackendUnreachable(GatewayError):
    status_code = 503
    error_type = "backend_unavailable"


class ExecutableNotFound(BackendUnreachable):
    """opencode の実行ファイルが見つからず起動できなかった"""

    error_type = "executable_not_found"


class SessionCreationFailed(GatewayError):
    status_code = 502
    error_type = "session_error"


class BackendRequestFailed(GatewayError):
    """session/prompt などバックエンドAPI呼び出しがHTTPエラーになった"""

    status_code = 502
    error_type = "backend_error"


class AssistantError(GatewayError):
    """バックエンドが生成エラーを返し、かつ何も出力が無かった"""

    status_code = 502
    error_type = "assistant_error"


class GatewayTimeout(GatewayError):
    status_code = 504
    error_type = "timeout"


class PromptSubmissionTimeout(GatewayTimeout):
    pass


class CollectionTimeout(GatewayTimeout):
    pass


class QueueTimeout(GatewayTimeout):
    pass
