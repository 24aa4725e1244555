from depth_locomotion_bridge.policy_server.config import DepthConfig as DepthConfig
from depth_locomotion_bridge.policy_server.config import DepthCropConfig as DepthCropConfig
from depth_locomotion_bridge.policy_server.config import (
  PolicyControllerConfig as PolicyControllerConfig,
)
from depth_locomotion_bridge.policy_server.metadata import ObservationToken as ObservationToken
from depth_locomotion_bridge.policy_server.metadata import PolicyMetadata as PolicyMetadata
from depth_locomotion_bridge.policy_server.metadata import (
  resolve_policy_metadata as resolve_policy_metadata,
)
from depth_locomotion_bridge.policy_server.runtime import InferenceRuntime as InferenceRuntime
from depth_locomotion_bridge.policy_server.runtime import (
  OnnxInferenceRuntime as OnnxInferenceRuntime,
)
