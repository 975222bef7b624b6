# Role orchestration engine
#
# This package loads local models once per artifact and serves several
# narrative roles from them.
#
# Key components:
#   - adapters/         Backend-specific engines (transformers, llama.cpp)
#   - registry.py       Maps backend names and artifact paths to engines
#   - pool.py           Instance pool and role binding
#   - pipeline.py       Tokenize / chunked decode / sampling loop
#   - orchestrator.py   Role call surface, fallbacks and background turns
