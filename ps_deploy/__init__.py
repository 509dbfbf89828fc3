# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
PS Deploy - Provisioning orchestrator for Pixel Streaming at Scale

This package provides:
- Component image creation (Signalling, Matchmaker, Frontend)
- CloudFormation stack deployment with create/update detection
- Service instance bring-up and target group health checks
- Idempotent cleanup of everything the deployment created
"""

__version__ = "1.0.0"
