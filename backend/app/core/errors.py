"""
文章生成流水线的领域异常
单个槽位内的异常在调度器边界被捕获并写入任务状态，不会中断整个批次
"""


class ArticlePipelineError(Exception):
    """流水线异常基类"""


class ConfigurationMissing(ArticlePipelineError):
    """尚未创建生成设置记录"""

    def __init__(self, message: str = "AI article settings not configured"):
        super().__init__(message)


class NoTitlesAvailable(ArticlePipelineError):
    """标题池中没有可认领的标题"""

    def __init__(self, message: str = "No unused titles available"):
        super().__init__(message)


class GenerationError(ArticlePipelineError):
    """内容生成调用失败"""


class GenerationTimeout(GenerationError):
    """生成调用超时"""


class GenerationProviderError(GenerationError):
    """生成服务返回错误（HTTP 错误、鉴权失败、响应格式异常等）"""


class MalformedGenerationOutput(ArticlePipelineError):
    """生成结果缺少必填字段（标题 / 正文）"""


class DuplicateSlug(ArticlePipelineError):
    """slug 唯一性冲突，说明时钟或随机源异常，不自动重试"""

    def __init__(self, slug: str):
        super().__init__(f"Duplicate slug: {slug}")
        self.slug = slug


class TitleAlreadyClaimed(ArticlePipelineError):
    """标题已被使用或已被其他任务认领"""

    def __init__(self, title_id: int):
        super().__init__(f"Title {title_id} is already used or claimed")
        self.title_id = title_id


class InvalidJobTransition(ArticlePipelineError):
    """非法的任务状态迁移"""

    def __init__(self, job_id, current: str, target: str):
        super().__init__(
            f"Job {job_id} cannot move from '{current}' to '{target}'"
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class JobNotFound(ArticlePipelineError):
    """任务不存在"""

    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id
