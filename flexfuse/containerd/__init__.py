import os

# the containerd bindings are generated with an old protoc; newer protobuf
# runtimes only load them through the pure-python implementation
os.environ.setdefault("PROTOCOL_BUFFERS_PYTHON_IMPLEMENTATION", "python")
