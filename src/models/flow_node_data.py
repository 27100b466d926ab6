from pydantic import BaseModel, Field, Discriminator, ConfigDict, TypeAdapter
from typing import Optional, List, Union, Literal, Annotated


class FlowNodePosition(BaseModel):
    x: float = 0
    y: float = 0


# Node content payloads, one per node type

class StartContent(BaseModel):
    model_config = ConfigDict(extra='allow')


class EndContent(BaseModel):
    model_config = ConfigDict(extra='allow')


class GalleryImage(BaseModel):
    url: str
    caption: Optional[str] = ""


class MessageContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    media_type: Literal["text", "image", "video", "audio", "document", "gallery"] = "text"
    text: Optional[str] = ""
    media_url: Optional[str] = ""
    caption: Optional[str] = ""
    gallery_images: List[GalleryImage] = Field(default_factory=list, max_length=10)
    typing: bool = False


class MenuOption(BaseModel):
    id: str
    label: str = ""
    value: Optional[str] = ""


class MenuContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    text: Optional[str] = ""
    options: List[MenuOption] = Field(default_factory=list)
    invalid_message: Optional[str] = ""
    max_attempts: int = Field(default=3, ge=1)
    variable_name: Optional[str] = ""


class InputContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    text: Optional[str] = ""
    variable_name: str = "resposta"
    validation: Literal["text", "email", "phone", "number", "cpf", "date"] = "text"
    error_message: Optional[str] = ""
    required: bool = True


ConditionOperator = Literal[
    "equals", "not_equals", "contains", "not_contains", "starts_with", "ends_with",
    "greater_than", "less_than", "is_empty", "is_not_empty"
]


class ConditionRule(BaseModel):
    variable: str
    operator: ConditionOperator = "equals"
    value: Optional[str] = ""


class ConditionContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    rules: List[ConditionRule] = Field(default_factory=list)
    logic: Literal["and", "or"] = "and"


ActionType = Literal[
    "set_variable", "add_tag", "remove_tag", "send_email", "notify",
    "notify_external", "close_conversation", "create_task"
]


class ActionContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    action_type: ActionType
    # set_variable
    variable_name: Optional[str] = ""
    variable_value: Optional[str] = ""
    # add_tag / remove_tag
    tag_id: Optional[str] = ""
    # send_email
    email_to: Optional[str] = ""
    email_subject: Optional[str] = ""
    email_body: Optional[str] = ""
    # notify
    notification_message: Optional[str] = ""
    # notify_external
    phone_number: Optional[str] = ""
    external_message: Optional[str] = ""
    # create_task
    task_title: Optional[str] = ""
    task_description: Optional[str] = ""
    task_due_in_days: Optional[int] = None


class TransferContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    transfer_type: Literal["department", "agent", "queue"] = "queue"
    department_id: Optional[str] = ""
    agent_id: Optional[str] = ""
    queue_id: Optional[str] = ""
    transfer_message: Optional[str] = ""
    end_flow: bool = True

    @property
    def target_id(self) -> str:
        if self.transfer_type == "department":
            return self.department_id or ""
        if self.transfer_type == "agent":
            return self.agent_id or ""
        return self.queue_id or ""


class AIResponseContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    system_prompt: Optional[str] = ""
    model: Optional[str] = ""
    temperature: float = Field(default=0.7, ge=0, le=2)
    save_to_variable: Optional[str] = "resposta_ia"
    include_history: bool = False
    history_limit: int = Field(default=10, ge=0)
    send_reply: bool = True


class DelayContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    duration: int = Field(default=5, ge=0)
    unit: Literal["seconds", "minutes", "hours"] = "seconds"
    typing: bool = False

    @property
    def total_seconds(self) -> int:
        if self.unit == "minutes":
            return self.duration * 60
        if self.unit == "hours":
            return self.duration * 3600
        return self.duration


class WebhookHeader(BaseModel):
    key: str
    value: Optional[str] = ""


class WebhookContent(BaseModel):
    model_config = ConfigDict(extra='allow')

    url: str = ""
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: List[WebhookHeader] = Field(default_factory=list)
    body: Optional[str] = ""
    response_variable: Optional[str] = ""
    response_path: Optional[str] = ""
    timeout: float = Field(default=30, gt=0)
    continue_on_error: bool = False


# Base FlowNode with common fields
class BaseFlowNode(BaseModel):
    model_config = ConfigDict(extra='allow')

    node_id: str
    name: Optional[str] = ""
    position: FlowNodePosition = Field(default_factory=FlowNodePosition)


class StartNode(BaseFlowNode):
    node_type: Literal["start"]
    content: StartContent = Field(default_factory=StartContent)


class MessageNode(BaseFlowNode):
    node_type: Literal["message"]
    content: MessageContent = Field(default_factory=MessageContent)


class MenuNode(BaseFlowNode):
    node_type: Literal["menu"]
    content: MenuContent = Field(default_factory=MenuContent)


class InputNode(BaseFlowNode):
    node_type: Literal["input"]
    content: InputContent = Field(default_factory=InputContent)


class ConditionNode(BaseFlowNode):
    node_type: Literal["condition"]
    content: ConditionContent = Field(default_factory=ConditionContent)


class ActionNode(BaseFlowNode):
    node_type: Literal["action"]
    content: ActionContent


class TransferNode(BaseFlowNode):
    node_type: Literal["transfer"]
    content: TransferContent = Field(default_factory=TransferContent)


class AIResponseNode(BaseFlowNode):
    node_type: Literal["ai_response"]
    content: AIResponseContent = Field(default_factory=AIResponseContent)


class DelayNode(BaseFlowNode):
    node_type: Literal["delay"]
    content: DelayContent = Field(default_factory=DelayContent)


class WebhookNode(BaseFlowNode):
    node_type: Literal["webhook"]
    content: WebhookContent = Field(default_factory=WebhookContent)


class EndNode(BaseFlowNode):
    node_type: Literal["end"]
    content: EndContent = Field(default_factory=EndContent)


# Union of all node types with discriminator
FlowNode = Annotated[
    Union[
        StartNode,
        MessageNode,
        MenuNode,
        InputNode,
        ConditionNode,
        ActionNode,
        TransferNode,
        AIResponseNode,
        DelayNode,
        WebhookNode,
        EndNode
    ],
    Discriminator("node_type")
]

FlowNodeAdapter = TypeAdapter(FlowNode)
FlowNodeListAdapter = TypeAdapter(List[FlowNode])

START_NODE_ID = "start"
