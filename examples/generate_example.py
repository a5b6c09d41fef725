"""
Example demonstrating both inferbridge paths.

The high-level path creates an engine handle and generates text for a
prompt. The low-level path stages a model, opens a session on a model
instance and reads token ids back from the forward result.

Pass a Hugging Face model directory as the first argument to use the
transformers backend; without one the deterministic fake backend is used.
"""

import logging
import sys
import tempfile

from inferbridge.capi import engine_api, model_api
from inferbridge.core.config import EngineConfig
from inferbridge.core.request import ModelInfo, RequestParams, ResponseData
from inferbridge.session.generation_config import GenerationConfig
from inferbridge.session.session import Session
from inferbridge.tensor.tensor import DataType

logging.basicConfig(level=logging.INFO)

if len(sys.argv) > 1:
    model_dir, backend = sys.argv[1], "transformers"
else:
    model_dir, backend = tempfile.mkdtemp(prefix="fake-model-"), "fake"

# High-level path
print(f"Creating engine for {model_dir} ({backend})...")
engine = engine_api.create_engine(EngineConfig(model_path=model_dir, backend=backend))
if engine is None:
    sys.exit(f"create_engine failed: {engine_api.get_last_error()}")

info = ModelInfo()
engine_api.get_model_info(engine, info)
print(f"  Model: {info.model_name} ({info.model_type}, {info.num_layers} layers)")

response = ResponseData()
request = RequestParams(prompt="Hello, what is inferbridge?", max_new_tokens=32, stop_words='["\\n"]')
if engine_api.generate(engine, request, response) != 0:
    print(f"  generate failed: {engine_api.get_last_error()}")
else:
    print(f"\nRequest {response.request_id}: {response.text!r}")
    print(f"  {response.input_tokens} input tokens, {response.output_tokens} output tokens")
engine_api.free_response(response)
engine_api.free_model_info(info)
engine_api.destroy_engine(engine)

# Low-level path
print("\nStaging model...")
model = model_api.create_model(model_dir, weight_type="fp32", backend=backend)
if model is None:
    sys.exit(f"create_model failed: {engine_api.get_last_error()}")
for stage in (model_api.create_shared_weights, model_api.process_weights, model_api.create_engine):
    if stage(model, 0, 0) != 0:
        sys.exit(engine_api.get_last_error())
instance = model_api.create_model_instance(model, 0)

tensor = model_api.create_tensor([3, 4, 5], (1, 3), DataType.INT64)
inputs = model_api.create_tensor_map()
model_api.tensor_map_set(inputs, "input_ids", tensor)
model_api.destroy_tensor(tensor)

steps = [Session(id=1, start_flag=True), Session(id=1, step=1, end_flag=True)]
for session in steps:
    result = model_api.forward(instance, inputs, session, GenerationConfig(max_new_tokens=4))
    if result is None:
        print(f"  forward failed: {engine_api.get_last_error()}")
        break
    tensors = model_api.forward_result_tensors(result)
    output = model_api.tensor_map_get(tensors, "output_ids")
    print(f"  step {session.step}: status={model_api.forward_result_status(result).value} "
          f"seq_len={model_api.forward_result_seq_len(result)} "
          f"output_ids={model_api.get_tensor(output).tolist()[0]}")
    model_api.destroy_tensor(output)
    model_api.destroy_tensor_map(tensors)
    model_api.destroy_forward_result(result)

model_api.destroy_tensor_map(inputs)
model_api.destroy_model_instance(instance)
model_api.destroy_model(model)
