import os
import tempfile

# 测试期间日志写到临时目录，需在导入 assistant_stream 之前设置
_tmp = tempfile.mkdtemp(prefix="assistant-stream-tests-")
os.environ.setdefault("LOG_DIR", os.path.join(_tmp, "logs"))
