#!/usr/bin/env python3
"""
Critic Consensus CLI

Usage:
    python cli.py --diff changes.diff
    python cli.py --diff changes.diff --task-id pr-42 --max-iterations 2
    python cli.py --resume pr-42
    python cli.py --list
"""

import argparse
import json
import logging
from pathlib import Path
import sys

from critic_core import (
    CriticError,
    PipelineState,
    TaskConflict,
    TaskNotFound,
    WorkflowEngine,
    load_config,
)
from critic_core.checkpoints import build_store


STATE_ICONS = {
    PipelineState.COMPLETED: "✅",
    PipelineState.FAILED: "❌",
    PipelineState.CANCELLED: "⚠️",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Critic Consensus: 다차원 코드 리뷰 + 합의 파이프라인"
    )

    parser.add_argument(
        "--diff",
        type=str,
        help="리뷰할 unified diff 파일 경로"
    )
    parser.add_argument(
        "--task-id",
        type=str,
        help="새 Task id (기본: 자동 생성)"
    )
    parser.add_argument(
        "--resume",
        type=str,
        metavar="TASK_ID",
        help="중단된 Task 재개"
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="저장된 Task 목록"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=".critic.yml",
        help="설정 파일 경로 (기본: .critic.yml)"
    )
    parser.add_argument(
        "--store-dir",
        type=str,
        help="체크포인트 저장 디렉토리 (기본: .critic)"
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        help="정제 루프 최대 회차"
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        help="동시 분석 수"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="결과를 JSON으로 출력"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="디버그 로그 출력"
    )
    return parser


def print_progress(task, message: str) -> None:
    print(f"  [{task.id}] {message}")


def print_task_list(tasks) -> None:
    if not tasks:
        print("저장된 Task가 없습니다.")
        return

    print(f"{'TASK':<24} {'STATE':<20} {'PASSES':<10} UPDATED")
    for task in tasks:
        passes = f"{task.completed_passes}/{task.total_passes}"
        print(f"{task.id:<24} {task.state.value:<20} {passes:<10} {task.updated_at}")


def print_checkpoint(checkpoint) -> None:
    task = checkpoint.task
    icon = STATE_ICONS.get(task.state, "•")

    print(f"\n{'='*60}")
    print(f"{icon} Task {task.id}: {task.state.name}")
    if task.state == PipelineState.FAILED:
        print(f"   실패 단계: {task.failed_stage.name if task.failed_stage else '-'}")
        print(f"   오류: {task.error}")
        print(f"   재개: python cli.py --resume {task.id}")
    elif task.state == PipelineState.CANCELLED:
        print(f"   재개: python cli.py --resume {task.id}")
    print(f"{'='*60}")

    if checkpoint.result:
        print()
        print(checkpoint.result.summary)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    config = load_config(args.config, {
        "store_dir": args.store_dir,
        "max_iterations": args.max_iterations,
        "max_concurrent_analyses": args.max_concurrency,
    })

    if args.list:
        print_task_list(build_store(config.store, config.store_dir).list_tasks())
        return 0

    if not args.diff and not args.resume:
        parser.print_help()
        return 1

    engine = WorkflowEngine.from_config(
        config,
        on_progress=None if args.json else print_progress,
    )

    try:
        if args.resume:
            if not args.json:
                print(f"📂 Task {args.resume} 재개")
            checkpoint = engine.resume(args.resume)
        else:
            if not Path(args.diff).exists():
                print(f"❌ 파일을 찾을 수 없습니다: {args.diff}")
                return 1
            if not args.json:
                print(f"🔍 리뷰 시작: {args.diff}")
            checkpoint = engine.start(args.diff, task_id=args.task_id)

    except TaskNotFound as e:
        print(f"❌ {e}")
        return 1
    except TaskConflict as e:
        print(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        # 엔진 실행 전/후(락 획득, 로드)에 들어온 중단
        print("\n\n⚠️ 중단됨. 마지막 체크포인트부터 --resume 으로 재개할 수 있습니다.")
        return 130
    except CriticError as e:
        print(f"❌ 오류 발생: {e}")
        return 1

    if args.json:
        print(json.dumps(checkpoint.to_dict(), indent=2, ensure_ascii=False))
    else:
        print_checkpoint(checkpoint)

    if checkpoint.task.state == PipelineState.CANCELLED:
        return 130
    return 0 if checkpoint.task.state == PipelineState.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
