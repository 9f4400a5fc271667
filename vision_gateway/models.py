"""
Core data models for the vision gateway.
"""

import base64
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal


DATA_URL_PATTERN = re.compile(r'^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;base64)?,(?P<data>.*)$', re.DOTALL)


def local_naive(moment: datetime) -> datetime:
    """Aware datetimes are converted to naive local time; naive ones pass through."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


@dataclass(frozen=True)
class ChartMetadata:
    """Metadata supplied with a captured chart image."""
    title: str | None = None
    source_url: str | None = None
    capture_timestamp: str | None = None


@dataclass(frozen=True)
class ImagePayload:
    """
    Base64 image ready to be embedded in a vendor request.

    Accepts raw bytes, a bare base64 string or a data URL.
    """
    data: str
    media_type: str = "image/png"

    @classmethod
    def from_any(cls, image: "bytes | str | ImagePayload") -> "ImagePayload":
        if isinstance(image, ImagePayload):
            return image
        if isinstance(image, (bytes, bytearray)):
            return cls(data=base64.b64encode(bytes(image)).decode("ascii"))
        if isinstance(image, str):
            match = DATA_URL_PATTERN.match(image)
            if match:
                return cls(
                    data=match.group("data"),
                    media_type=match.group("mime") or "image/png",
                )
            return cls(data=image)
        raise TypeError(f"Unsupported image type: {type(image).__name__}")

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


@dataclass(frozen=True)
class ConversationTurn:
    """One turn of a conversation; turns are appended, never edited."""
    role: Literal["user", "assistant"]
    content: str

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"role must be 'user' or 'assistant', got {self.role!r}")

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict) -> "ConversationTurn":
        return cls(role=raw["role"], content=raw["content"])


@dataclass
class AnalysisRequest:
    """统一图表分析请求"""
    provider: str
    image: ImagePayload
    metadata: ChartMetadata = field(default_factory=ChartMetadata)
    category: str = "market-analysis"
    history: list[ConversationTurn] = field(default_factory=list)

    def validate(self) -> list[str]:
        """验证请求参数，返回错误列表"""
        errors = []
        if not self.provider or not self.provider.strip():
            errors.append("provider is required and cannot be empty")
        if not self.image.data:
            errors.append("image is required and cannot be empty")
        if self.history and self.history[-1].role != "user":
            errors.append("the last history turn must have role 'user'")
        return errors


@dataclass
class TokenUsage:
    """Token使用统计"""
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """总Token数 = 输入Token + 输出Token"""
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class AnalysisResult:
    """统一分析结果; usage is None when the vendor did not report it."""
    text: str
    usage: TokenUsage | None = None
    model: str | None = None
    provider: str | None = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "usage": self.usage.to_dict() if self.usage else None,
        }


@dataclass
class PricingRule:
    """定价规则"""
    provider: str
    model: str
    input_cost_per_1m: float
    output_cost_per_1m: float

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """根据Token使用量计算成本(USD)"""
        input_cost = (input_tokens / 1_000_000) * self.input_cost_per_1m
        output_cost = (output_tokens / 1_000_000) * self.output_cost_per_1m
        return input_cost + output_cost


@dataclass(frozen=True)
class UsageRecord:
    """使用记录, one per completed request."""
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost": self.cost,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "UsageRecord":
        return cls(
            provider=raw["provider"],
            model=raw["model"],
            input_tokens=int(raw.get("input_tokens", 0)),
            output_tokens=int(raw.get("output_tokens", 0)),
            cost=float(raw.get("cost", 0.0)),
            timestamp=local_naive(datetime.fromisoformat(raw["timestamp"])),
        )


@dataclass
class CostSummary:
    """Monthly cost aggregate; never persisted."""
    month_total: float = 0.0
    month_average: float = 0.0
    request_count: int = 0
    source: Literal["local", "vendor"] = "local"
