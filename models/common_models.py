from typing import Optional, Dict, Any
from pydantic import BaseModel

class RunRequest(BaseModel):
    source_code: Optional[str] = None
    language_id: Optional[int] = None

class RunResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    compile_output: str = ""
    status: Dict[str, Any] = {}

class Language(BaseModel):
    id: int
    name: str

class FileContentRequest(BaseModel):
    content: str

class AddFileRequest(BaseModel):
    filename: str
    content: str = "// New file"

class OutputRequest(BaseModel):
    output: str

class SessionRunRequest(BaseModel):
    filename: str
    language_id: int = 63   # JavaScript (Node.js)
