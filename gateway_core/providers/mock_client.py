"""Mock 后端：根据关键词返回固定回复，逐词流式输出。

始终可用，既用于演示，也是其他后端失败时的回退目标。
输出对相同输入是确定的。
"""

import asyncio
from typing import AsyncIterator, List, Optional

from gateway_core.config.settings import settings
from gateway_core.domain.models import BackendStatus, ChatMessage, GenerationSettings, last_user_message
from gateway_core.providers.base import StreamHandle
from gateway_core.providers.registry import MOCK_CONFIG


MOCK_RESPONSES = {
    "debug": (
        "I'd be happy to help debug your TypeScript error! Here's a systematic approach:\n\n"
        "```typescript\n// Common TypeScript errors and fixes:\n\n// 1. Type mismatch\n"
        "const value: string = 42; // ❌ Error\nconst value: string = \"42\"; // ✅ Fixed\n\n"
        "// 2. Property doesn't exist\ninterface User {\n  name: string;\n}\n"
        "const user: User = { name: \"John\", age: 30 }; // ❌\n\n// Fix: Extend interface\n"
        "interface User {\n  name: string;\n  age?: number; // Optional property\n}\n```\n\n"
        "Could you share the specific error message you're seeing?"
    ),
    "async": (
        "Great question! `async/await` is syntactic sugar for working with Promises in JavaScript:\n\n"
        "```javascript\n// Traditional Promise chain\nfetchUser(id)\n  .then(user => fetchPosts(user.id))\n"
        "  .then(posts => console.log(posts))\n  .catch(error => console.error(error));\n\n"
        "// Same with async/await\nasync function getUserPosts(id) {\n  try {\n"
        "    const user = await fetchUser(id);\n    const posts = await fetchPosts(user.id);\n"
        "    console.log(posts);\n  } catch (error) {\n    console.error(error);\n  }\n}\n```\n\n"
        "**Key concepts:**\n- `async` makes a function return a Promise\n"
        "- `await` pauses execution until Promise resolves\n"
        "- Makes asynchronous code look synchronous"
    ),
    "component": (
        "Here's a modern React component with TypeScript:\n\n```tsx\n"
        "import React, { useState } from 'react';\n\ninterface UserCardProps {\n  name: string;\n"
        "  role: string;\n  avatarUrl?: string;\n  onContact?: () => void;\n}\n\n"
        "export function UserCard({ name, role, avatarUrl, onContact }: UserCardProps) {\n"
        "  const [isHovered, setIsHovered] = useState(false);\n\n  return (\n"
        "    <div className=\"rounded-lg p-6\" onMouseEnter={() => setIsHovered(true)}>\n"
        "      <h3 className=\"text-lg font-semibold\">{name}</h3>\n"
        "      <p className=\"text-sm\">{role}</p>\n"
        "      {onContact && <button onClick={onContact}>Contact</button>}\n"
        "    </div>\n  );\n}\n```"
    ),
    "review": (
        "I'll review your code for best practices. Here are key areas I look for:\n\n"
        "**✅ Good Practices:**\n```typescript\n// 1. Descriptive naming\n"
        "const calculateUserAge = (birthDate: Date) => {...}\n\n// 2. Single responsibility\n"
        "function validateEmail(email: string): boolean {...}\n"
        "function sendEmail(to: string, subject: string) {...}\n\n// 3. Early returns\n"
        "function processUser(user: User | null) {\n  if (!user) return null;\n"
        "  if (!user.isActive) return null;\n  \n  return processActiveUser(user);\n}\n```\n\n"
        "Share your code and I'll provide specific feedback!"
    ),
    "default": (
        "I'm here to help! I can assist with:\n\n"
        "🐛 **Debugging** - Fix errors and issues in your code\n"
        "📚 **Learning** - Explain concepts and best practices\n"
        "⚡ **Coding** - Generate components and functions\n"
        "✅ **Review** - Analyze code quality\n\n"
        "Note: This is a mock response. Configure a real AI backend in Settings to get actual AI assistance.\n\n"
        "What would you like to work on?"
    ),
}


def response_for_prompt(prompt: str) -> str:
    """按关键词挑选回复，匹配不区分大小写。"""

    lower = prompt.lower()
    if "debug" in lower or "error" in lower:
        return MOCK_RESPONSES["debug"]
    if "async" in lower or "await" in lower:
        return MOCK_RESPONSES["async"]
    if "component" in lower or "react" in lower:
        return MOCK_RESPONSES["component"]
    if "review" in lower or "best practice" in lower:
        return MOCK_RESPONSES["review"]
    return MOCK_RESPONSES["default"]


def split_words(text: str) -> List[str]:
    """按空格切词：首个词原样，其后每个词带前导空格，拼接后还原原文。"""

    words = text.split(" ")
    return [w if i == 0 else " " + w for i, w in enumerate(words)]


class MockClient:
    """确定性的 Mock 后端实现。"""

    name = MOCK_CONFIG.name
    stateful = MOCK_CONFIG.stateful

    def __init__(self, cfg=settings):
        self._settings = cfg
        self.timeout = MOCK_CONFIG.timeout(cfg)

    def expected_output(self, messages: List[ChatMessage]) -> str:
        last = last_user_message(messages)
        return response_for_prompt(last.content if last else "")

    async def stream(
        self,
        messages: List[ChatMessage],
        settings: GenerationSettings,
        working_directory: Optional[str] = None,
        session_handle: Optional[str] = None,
    ) -> StreamHandle:
        words = split_words(self.expected_output(messages))
        delay = float(getattr(self._settings, "mock_stream_delay", 0) or 0)

        async def fragments() -> AsyncIterator[str]:
            for word in words:
                yield word
                if delay:
                    await asyncio.sleep(delay)

        return StreamHandle(fragments())

    async def is_available(self) -> BackendStatus:
        return BackendStatus(backend=self.name, available=True, models=["mock"])
