"""Closed set of node types and their dispatch routes."""

from enum import Enum
from typing import NamedTuple

from models.queues import JobPriority, JobType, QueueName


class UnknownNodeTypeError(Exception):
    """Raised when a node type string is not part of the node catalogue."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class NodeType(str, Enum):
    """Every node type a workflow graph may contain."""

    # Input
    IMAGE_INPUT = "imageInput"
    AUDIO_INPUT = "audioInput"
    VIDEO_INPUT = "videoInput"
    PROMPT = "prompt"
    TEMPLATE = "template"
    TWEET_INPUT = "tweetInput"
    RSS_INPUT = "rssInput"
    WORKFLOW_INPUT = "workflowInput"

    # AI
    IMAGE_GEN = "imageGen"
    VIDEO_GEN = "videoGen"
    LLM = "llm"
    TWEET_REMIX = "tweetRemix"
    LIP_SYNC = "lipSync"
    VOICE_CHANGE = "voiceChange"
    TEXT_TO_SPEECH = "textToSpeech"
    TRANSCRIBE = "transcribe"
    MOTION_CONTROL = "motionControl"

    # Processing
    RESIZE = "resize"
    ANIMATION = "animation"
    VIDEO_STITCH = "videoStitch"
    VIDEO_TRIM = "videoTrim"
    VIDEO_FRAME_EXTRACT = "videoFrameExtract"
    REFRAME = "reframe"
    UPSCALE = "upscale"
    LUMA_REFRAME_IMAGE = "lumaReframeImage"
    LUMA_REFRAME_VIDEO = "lumaReframeVideo"
    TOPAZ_IMAGE_UPSCALE = "topazImageUpscale"
    TOPAZ_VIDEO_UPSCALE = "topazVideoUpscale"
    IMAGE_GRID_SPLIT = "imageGridSplit"
    ANNOTATION = "annotation"
    SUBTITLE = "subtitle"

    # Output
    OUTPUT = "output"
    PREVIEW = "preview"
    SOCIAL_PUBLISH = "socialPublish"
    WORKFLOW_OUTPUT = "workflowOutput"

    # Composition
    WORKFLOW_REF = "workflowRef"

    @classmethod
    def parse(cls, value: "str | NodeType") -> "NodeType":
        """Convert a raw type string, raising UnknownNodeTypeError if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownNodeTypeError(str(value)) from None


class NodeRoute(NamedTuple):
    queue: QueueName
    job_type: JobType
    priority: JobPriority


DEFAULT_ROUTE = NodeRoute(
    QueueName.WORKFLOW_ORCHESTRATOR, JobType.EXECUTE_NODE, JobPriority.NORMAL
)

NODE_ROUTES: dict[NodeType, NodeRoute] = {
    NodeType.IMAGE_GEN: NodeRoute(
        QueueName.IMAGE_GENERATION, JobType.GENERATE_IMAGE, JobPriority.NORMAL
    ),
    NodeType.VIDEO_GEN: NodeRoute(
        QueueName.VIDEO_GENERATION, JobType.GENERATE_VIDEO, JobPriority.LOW
    ),
    NodeType.MOTION_CONTROL: NodeRoute(
        QueueName.VIDEO_GENERATION, JobType.EXECUTE_NODE, JobPriority.NORMAL
    ),
    NodeType.LLM: NodeRoute(
        QueueName.LLM_GENERATION, JobType.GENERATE_TEXT, JobPriority.HIGH
    ),
    NodeType.REFRAME: NodeRoute(
        QueueName.PROCESSING, JobType.EXECUTE_NODE, JobPriority.NORMAL
    ),
    NodeType.UPSCALE: NodeRoute(
        QueueName.PROCESSING, JobType.EXECUTE_NODE, JobPriority.NORMAL
    ),
    NodeType.LUMA_REFRAME_IMAGE: NodeRoute(
        QueueName.PROCESSING, JobType.REFRAME_IMAGE, JobPriority.NORMAL
    ),
    NodeType.LUMA_REFRAME_VIDEO: NodeRoute(
        QueueName.PROCESSING, JobType.REFRAME_VIDEO, JobPriority.NORMAL
    ),
    NodeType.TOPAZ_IMAGE_UPSCALE: NodeRoute(
        QueueName.PROCESSING, JobType.UPSCALE_IMAGE, JobPriority.NORMAL
    ),
    NodeType.TOPAZ_VIDEO_UPSCALE: NodeRoute(
        QueueName.PROCESSING, JobType.UPSCALE_VIDEO, JobPriority.NORMAL
    ),
    NodeType.VIDEO_FRAME_EXTRACT: NodeRoute(
        QueueName.PROCESSING, JobType.EXECUTE_NODE, JobPriority.NORMAL
    ),
    NodeType.LIP_SYNC: NodeRoute(
        QueueName.PROCESSING, JobType.EXECUTE_NODE, JobPriority.NORMAL
    ),
    NodeType.VOICE_CHANGE: NodeRoute(
        QueueName.PROCESSING, JobType.EXECUTE_NODE, JobPriority.NORMAL
    ),
    NodeType.TEXT_TO_SPEECH: NodeRoute(
        QueueName.PROCESSING, JobType.EXECUTE_NODE, JobPriority.NORMAL
    ),
    NodeType.WORKFLOW_REF: NodeRoute(
        QueueName.WORKFLOW_ORCHESTRATOR, JobType.EXECUTE_NODE, JobPriority.NORMAL
    ),
}


def route_for(node_type: "str | NodeType") -> NodeRoute:
    """Return the queue, job type and priority for a node type."""
    return NODE_ROUTES.get(NodeType.parse(node_type), DEFAULT_ROUTE)


# Nodes whose value lives in their own static data. They never run a job.
PASSTHROUGH_NODE_TYPES: frozenset[NodeType] = frozenset(
    {
        NodeType.PROMPT,
        NodeType.TEMPLATE,
        NodeType.IMAGE_INPUT,
        NodeType.VIDEO_INPUT,
        NodeType.AUDIO_INPUT,
        NodeType.TWEET_INPUT,
        NodeType.RSS_INPUT,
    }
)


def is_passthrough(node_type: "str | NodeType") -> bool:
    return NodeType.parse(node_type) in PASSTHROUGH_NODE_TYPES


# Output handle -> data fields, for reading a passthrough node's value.
PASSTHROUGH_OUTPUT_FIELDS: dict[NodeType, dict[str, list[str]]] = {
    NodeType.PROMPT: {"text": ["prompt"]},
    NodeType.TEMPLATE: {"text": ["resolvedPrompt"]},
    NodeType.IMAGE_INPUT: {"image": ["image"]},
    NodeType.VIDEO_INPUT: {"video": ["video"]},
    NodeType.AUDIO_INPUT: {"audio": ["audio"]},
    NodeType.TWEET_INPUT: {"text": ["extractedTweet", "rawText"]},
    NodeType.RSS_INPUT: {"text": ["text", "content"]},
}

PASSTHROUGH_FALLBACK_FIELDS = ["value", "prompt", "text", "image", "video", "audio", "url"]

# Name of the output handle a generating node writes its primary result to.
NODE_OUTPUT_HANDLE: dict[NodeType, str] = {
    NodeType.IMAGE_GEN: "image",
    NodeType.VIDEO_GEN: "video",
    NodeType.MOTION_CONTROL: "video",
    NodeType.LLM: "text",
    NodeType.TWEET_REMIX: "text",
    NodeType.TRANSCRIBE: "text",
    NodeType.LIP_SYNC: "video",
    NodeType.VOICE_CHANGE: "audio",
    NodeType.TEXT_TO_SPEECH: "audio",
    NodeType.REFRAME: "media",
    NodeType.UPSCALE: "media",
    NodeType.LUMA_REFRAME_IMAGE: "image",
    NodeType.LUMA_REFRAME_VIDEO: "video",
    NodeType.TOPAZ_IMAGE_UPSCALE: "image",
    NodeType.TOPAZ_VIDEO_UPSCALE: "video",
    NodeType.VIDEO_FRAME_EXTRACT: "image",
}
