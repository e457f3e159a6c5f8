# Copyright 2025 Roger Cibrian
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

"""External tool discovery and invocation for AppxKit."""

from .locator import TOOL_EXECUTABLES, ToolLocation, ToolLocator
from .powershell import PowerShellRunner, encode_command, ps_quote
from .process import ProcessResult, kill_process_tree, run_process

__all__ = [
    "TOOL_EXECUTABLES",
    "ToolLocation",
    "ToolLocator",
    "PowerShellRunner",
    "encode_command",
    "ps_quote",
    "ProcessResult",
    "kill_process_tree",
    "run_process",
]
