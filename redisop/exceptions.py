# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Error taxonomy for the reconciliation engine.

Components raise these errors and never decide retry policy themselves; the
reconcile driver maps each class to a terminal phase or a requeue strategy.
"""

from typing import Optional


class RedisOperatorError(Exception):
    """Base class for all errors raised by the engine."""

    reason = "Error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def get_message(self) -> str:
        return self.message


class InvalidSpecError(RedisOperatorError):
    """The declared spec cannot be synthesized. Terminal until the spec changes."""

    reason = "InvalidSpec"


class PendingDependencyError(RedisOperatorError):
    """A referenced object is missing or not ready yet."""

    reason = "PendingDependency"

    def __init__(self, message: str, dependency: Optional[str] = None) -> None:
        super().__init__(message)
        self.dependency = dependency


class ConflictError(RedisOperatorError):
    """A single optimistic-concurrency write was rejected."""

    reason = "Conflict"


class ConflictExhaustedError(RedisOperatorError):
    """Conflicting writes persisted through every retry attempt."""

    reason = "ConflictExhausted"

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class TransientPlatformError(RedisOperatorError):
    """Timeouts, throttling and unavailability of the platform API."""

    reason = "TransientError"


class UnrecoverableError(RedisOperatorError):
    """Permission denials, rejected manifests and other faults needing an operator."""

    reason = "Unrecoverable"
