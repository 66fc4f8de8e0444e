"""JSON-RPC 2.0 消息模型

LSP 在 stdio 上承载 JSON-RPC 2.0，这里定义消息类型、错误码和消息种类判定。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel

# =============================================================================
# 错误码
# =============================================================================

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
REQUEST_CANCELLED = -32800

TIMEOUT_MESSAGE = "Request timed out"


# =============================================================================
# JSON-RPC 2.0 基础类型
# =============================================================================


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 请求"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    method: str
    params: Optional[Any] = None


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 通知 (无 id)"""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Any] = None


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 错误"""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 响应

    result 与 error 只会设置其中之一。
    """

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None] = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def timed_out(cls, request_id: Union[str, int]) -> "JSONRPCResponse":
        """构造超时清理使用的合成错误响应"""
        return cls(
            id=request_id,
            error=JSONRPCError(code=INTERNAL_ERROR, message=TIMEOUT_MESSAGE),
        )


# =============================================================================
# 消息构建
# =============================================================================


def _without_empty_params(message: Dict[str, Any]) -> Dict[str, Any]:
    # 只去掉顶层的 params: null，参数内部的 null 原样保留
    if message.get("params") is None:
        message.pop("params", None)
    return message


def build_request(request_id: Union[str, int], method: str, params: Any = None) -> Dict[str, Any]:
    """构建请求消息"""
    return _without_empty_params(
        JSONRPCRequest(id=request_id, method=method, params=params).model_dump()
    )


def build_notification(method: str, params: Any = None) -> Dict[str, Any]:
    """构建通知消息"""
    return _without_empty_params(JSONRPCNotification(method=method, params=params).model_dump())


def build_response(request_id: Union[str, int, None], result: Any) -> Dict[str, Any]:
    """构建成功响应（result 为 null 时也保留字段）"""
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def build_error_response(
    request_id: Union[str, int, None],
    code: int,
    message: str,
    data: Any = None,
) -> Dict[str, Any]:
    """构建错误响应"""
    error = JSONRPCError(code=code, message=message, data=data)
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": error.model_dump(exclude_none=True),
    }


# =============================================================================
# 消息种类判定
# =============================================================================


class MessageKind(Enum):
    """消息种类"""

    REQUEST = "request"
    NOTIFICATION = "notification"
    RESPONSE = "response"
    INVALID = "invalid"


def is_request(message: Dict[str, Any]) -> bool:
    """服务器发起的请求：同时带 id 和 method"""
    return "id" in message and "method" in message


def is_notification(message: Dict[str, Any]) -> bool:
    """通知：有 method 无 id"""
    return "id" not in message and "method" in message


def is_response(message: Dict[str, Any]) -> bool:
    """响应：有 id 无 method，并带 result 或 error"""
    return (
        "id" in message
        and "method" not in message
        and ("result" in message or "error" in message)
    )


def message_kind(message: Dict[str, Any]) -> MessageKind:
    if is_request(message):
        return MessageKind.REQUEST
    if is_notification(message):
        return MessageKind.NOTIFICATION
    if is_response(message):
        return MessageKind.RESPONSE
    return MessageKind.INVALID


def response_from_message(message: Dict[str, Any]) -> JSONRPCResponse:
    """把收到的响应字典转换为 JSONRPCResponse

    error 字段格式不规范时仍转换为内部错误，不抛出异常。
    """
    error = message.get("error")
    if error is None:
        return JSONRPCResponse(id=message.get("id"), result=message.get("result"))

    if isinstance(error, dict):
        code = error.get("code")
        rpc_error = JSONRPCError(
            code=code if isinstance(code, int) else INTERNAL_ERROR,
            message=str(error.get("message", "Unknown LSP error")),
            data=error.get("data"),
        )
    else:
        rpc_error = JSONRPCError(code=INTERNAL_ERROR, message=str(error))
    return JSONRPCResponse(id=message.get("id"), error=rpc_error)
