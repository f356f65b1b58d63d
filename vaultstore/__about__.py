# SPDX-FileCopyrightText: 2023-present E.W.Ayers <contact@edayers.com>
#
# SPDX-License-Identifier: MIT
__version__ = "0.1.0"
