"""Core 基础设施（错误分类）。"""
