from pydantic import BaseModel


class LoginRequest(BaseModel):
    login: str  # username or email
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str
