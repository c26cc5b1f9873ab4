"""Lightweight shared DTOs for the signaling message contract."""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Payload(BaseModel):
    """camelCase 와이어 키와 snake_case 필드를 모두 허용하는 기반 모델."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class SignalEnvelope(BaseModel):
    """모든 시그널링 메시지를 감싸는 봉투 `{"type", "data"}`."""

    type: str = Field(min_length=1, description="메시지 타입")
    data: Any = Field(default=None, description="메시지 페이로드")


class SessionDescription(_Payload):
    """SDP offer/answer."""

    sdp: str = Field(min_length=1)
    type: str = Field(pattern="^(offer|answer|pranswer|rollback)$")


class IceCandidatePayload(_Payload):
    """브라우저 RTCIceCandidateInit 형식의 ICE candidate."""

    candidate: str = Field(min_length=1, description="candidate:... 문자열")
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")


class UserEntry(_Payload):
    """active-users 로스터의 항목."""

    user_id: str = Field(alias="userId", description="표시 이름")
    socket_id: str = Field(alias="socketId", description="릴레이가 부여한 세션 ID")

    @field_validator("user_id", mode="before")
    @classmethod
    def _unwrap_user_id(cls, value: Union[str, dict]) -> str:
        # 일부 릴레이는 register 페이로드 전체를 userId로 저장함
        if isinstance(value, dict):
            return str(value.get("userId", ""))
        return value


class RegisterPayload(_Payload):
    user_id: str = Field(alias="userId", min_length=1)
    socket_id: str = Field(alias="socketId", min_length=1)


class CallOffer(_Payload):
    """call-user (out) / call-received (in)."""

    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    offer: SessionDescription


class CallAnswer(_Payload):
    """call-accepted (양방향)."""

    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    answer: SessionDescription


class IceCandidateMessage(_Payload):
    """ice-candidate (양방향). candidate는 파싱 전 원본을 유지함."""

    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    candidate: Any = None


class PeerAddress(_Payload):
    """call-rejected / end-call: `{to}` 또는 `{from}`."""

    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")


class CallFailed(_Payload):
    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    error: str = "Failed to establish connection"


class UserDisconnected(_Payload):
    socket_id: str = Field(alias="socketId")
